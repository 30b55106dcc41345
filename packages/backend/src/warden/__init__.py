"""Warden — identity, credential and authorization core.

Establishes who a principal is (local password or a linked external
provider identity), what they may do (role-derived and directly granted
permissions), and issues signed, time-bounded proof of authentication.
"""

__version__ = "0.1.0"

"""Authentication and authorization.

Learn: Two ways in, one way to decide.
1. Users → email/password → JWT access/refresh tokens
2. Users → external provider (Google, Facebook, GitHub, Discord) → same tokens

Every authorization decision goes through AccessControlGate, which
re-resolves permissions from the store instead of trusting the token.
"""

"""Event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover all event types in the system.
"""

# ─── Identity graph ──────────────────────────────────────

USER_CREATED = "user.created"
USER_DELETED = "user.deleted"
EMAIL_ADDED = "email.added"
EMAIL_VERIFIED = "email.verified"
EMAIL_REMOVED = "email.removed"
EMAIL_PRIMARY_CHANGED = "email.primary_changed"
SOCIAL_LOGIN_LINKED = "social_login.linked"

# ─── Authorization ───────────────────────────────────────

ROLE_ASSIGNED = "role.assigned"
PERMISSION_GRANTED = "permission.granted"
PERMISSION_REVOKED = "permission.revoked"

# ─── Credentials and tokens ──────────────────────────────

CREDENTIAL_SET = "credential.set"
TOKENS_REVOKED = "tokens.revoked"

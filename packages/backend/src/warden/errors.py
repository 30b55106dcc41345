"""Error taxonomy for the identity core.

Every failure is scoped to a single request. Services raise these; the
HTTP layer renders them through one exception handler using
``status_code``. Messages never include secrets.
"""


class WardenError(Exception):
    """Base class for all identity-core errors."""

    status_code: int = 400
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


# ─── Identity graph ─────────────────────────────────────


class DuplicateEmail(WardenError):
    status_code = 409
    default_message = "Email already registered"


class IdentityConflict(WardenError):
    status_code = 409
    default_message = "Identity is already linked to another account"


class NotOwned(WardenError):
    status_code = 403
    default_message = "Email does not belong to this user"


class Unverified(WardenError):
    status_code = 409
    default_message = "Email is not verified"


class NotFound(WardenError):
    status_code = 404
    default_message = "Not found"


class InvalidCursor(WardenError):
    status_code = 422
    default_message = "Malformed pagination cursor"


# ─── Credentials ────────────────────────────────────────


class WeakSecret(WardenError):
    status_code = 422
    default_message = "Password is too weak"


# ─── Authentication / authorization ─────────────────────


class AuthError(WardenError):
    """Failures surfaced by the access control gate."""

    status_code = 401


class InvalidCredentials(AuthError):
    default_message = "Invalid credentials"


class Forbidden(AuthError):
    status_code = 403
    default_message = "Permission denied"


class ProviderVerificationFailed(AuthError):
    default_message = "Provider identity could not be verified"


class TokenError(AuthError):
    """Raised when token verification fails."""

    default_message = "Invalid token"


class Expired(TokenError):
    default_message = "Token has expired"


class Malformed(TokenError):
    default_message = "Token is malformed"


class Revoked(TokenError):
    default_message = "Token has been revoked"


# ─── Infrastructure ─────────────────────────────────────


class StoreUnavailable(WardenError):
    status_code = 503
    default_message = "Identity store unavailable"

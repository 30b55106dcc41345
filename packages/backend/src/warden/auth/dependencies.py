"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to extract and
validate the current principal from the request. Every protected route
goes through the AccessControlGate, so token verification and the
permission re-resolution happen in exactly one place.
"""

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from warden.auth.gate import AccessControlGate
from warden.auth.permissions import Permission
from warden.auth.principal import Principal
from warden.auth.providers import ProviderVerifier, UserinfoVerifier
from warden.db.engine import get_db
from warden.errors import Malformed


def get_verifier() -> ProviderVerifier:
    """Provider identity lookup; override to stub providers."""
    return UserinfoVerifier()


def get_gate(
    db: AsyncSession = Depends(get_db),
    verifier: ProviderVerifier = Depends(get_verifier),
) -> AccessControlGate:
    return AccessControlGate(db, verifier=verifier)


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer ...`` header."""
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:]
    return None


async def get_current_principal_optional(
    token: Optional[str] = Depends(bearer_token),
    gate: AccessControlGate = Depends(get_gate),
) -> Optional[Principal]:
    """Resolve the caller, or None when no token was sent.

    A token that *was* sent but fails verification is still an error.
    """
    if token is None:
        return None
    return await gate.authenticate_token(token)


async def get_current_principal(
    principal: Optional[Principal] = Depends(get_current_principal_optional),
) -> Principal:
    """Resolve the caller (required — 401 if no token)."""
    if principal is None:
        raise Malformed("Authentication required")
    return principal


def require_permission(permission: Permission):
    """Dependency factory: the caller must currently hold ``permission``."""

    async def dependency(
        token: Optional[str] = Depends(bearer_token),
        gate: AccessControlGate = Depends(get_gate),
    ) -> Principal:
        if token is None:
            raise Malformed("Authentication required")
        return await gate.authorize(token, permission)

    return dependency

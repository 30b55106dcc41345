"""Auth API — registration, sign-in, tokens, passwords.

Learn: Routes are thin: each one calls the AccessControlGate and shapes
the result. Errors raised by the gate (WardenError subclasses) are turned
into HTTP responses by the handler registered in main.py.
- POST /auth/register → create a user with a password → tokens
- POST /auth/login → email/password → tokens
- POST /auth/provider → provider access token → tokens
- POST /auth/refresh → refresh token → new tokens
- GET /auth/me → current principal and emails
- POST /auth/password → change password (signs out other sessions)
- POST /auth/password/forgot → reset token to the outbox
- POST /auth/password/reset → reset token + new password
- POST /auth/revoke → sign out everywhere
"""

from fastapi import APIRouter, Depends

from warden.auth.dependencies import get_current_principal, get_gate
from warden.auth.gate import AccessControlGate
from warden.auth.outbox import PASSWORD_RESET, TokenOutbox, get_outbox
from warden.auth.principal import Principal
from warden.schemas.identity import (
    EmailRead,
    LoginRequest,
    MeResponse,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordForgotResponse,
    PasswordResetRequest,
    ProviderLoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
)

router = APIRouter(prefix="/auth")


def token_response(principal: Principal) -> TokenResponse:
    return TokenResponse(
        access_token=principal.access_token,
        refresh_token=principal.refresh_token,
        expires_at=principal.expires_at,
        user_id=principal.user_id,
        roles=sorted(principal.roles),
        permissions=sorted(principal.permissions),
    )


# ─── Register / login ───────────────────────────────────


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(body: RegisterRequest, gate: AccessControlGate = Depends(get_gate)):
    """Create a new user account."""
    return token_response(await gate.register(body.email, body.password))


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, gate: AccessControlGate = Depends(get_gate)):
    """Login with email and password → tokens."""
    return token_response(await gate.authenticate_password(body.email, body.password))


@router.post("/provider", response_model=TokenResponse)
async def provider_login(
    body: ProviderLoginRequest, gate: AccessControlGate = Depends(get_gate)
):
    """Login with an external provider's access token."""
    principal = await gate.authenticate_provider_token(body.provider, body.access_token)
    return token_response(principal)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(body: RefreshRequest, gate: AccessControlGate = Depends(get_gate)):
    """Exchange a refresh token for a new token pair."""
    return token_response(await gate.refresh(body.refresh_token))


# ─── Current principal ──────────────────────────────────


@router.get("/me", response_model=MeResponse)
async def get_me(
    principal: Principal = Depends(get_current_principal),
    gate: AccessControlGate = Depends(get_gate),
):
    """Get the current principal's roles, permissions and emails."""
    emails = await gate.identity.list_emails(principal.user_id)
    return MeResponse(
        id=principal.user_id,
        roles=sorted(principal.roles),
        permissions=sorted(principal.permissions),
        emails=[EmailRead.model_validate(e) for e in emails],
    )


@router.post("/revoke", status_code=204)
async def revoke_own_tokens(
    principal: Principal = Depends(get_current_principal),
    gate: AccessControlGate = Depends(get_gate),
):
    """Invalidate every token issued to the caller so far."""
    await gate.revoke_tokens(principal.user_id)


# ─── Passwords ──────────────────────────────────────────


@router.post("/password", response_model=TokenResponse)
async def change_password(
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_current_principal),
    gate: AccessControlGate = Depends(get_gate),
):
    """Change password. Other sessions are signed out; new tokens returned."""
    updated = await gate.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return token_response(updated)


@router.post("/password/forgot", response_model=PasswordForgotResponse, status_code=202)
async def forgot_password(
    body: PasswordForgotRequest,
    gate: AccessControlGate = Depends(get_gate),
    outbox: TokenOutbox = Depends(get_outbox),
):
    """Send a reset token to the address, if it is registered."""
    token = await gate.request_password_reset(body.email)
    if token is not None:
        await outbox.send(body.email, PASSWORD_RESET, token)
    return PasswordForgotResponse()


@router.post("/password/reset", status_code=204)
async def reset_password(
    body: PasswordResetRequest, gate: AccessControlGate = Depends(get_gate)
):
    """Set a new password using a reset token."""
    await gate.reset_password(body.token, body.new_password)

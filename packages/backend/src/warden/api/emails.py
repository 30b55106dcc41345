"""Email API — the caller's own addresses.

- GET /auth/emails → list
- POST /auth/emails → add (unverified, non-primary)
- DELETE /auth/emails/:id → remove a non-primary email
- PATCH /auth/emails/:id/primary → make primary
- POST /auth/emails/:id/verification → verification token to the outbox
- POST /auth/emails/verify → redeem a verification token
"""

import uuid

from fastapi import APIRouter, Depends

from warden.auth.dependencies import get_current_principal, get_gate
from warden.auth.gate import AccessControlGate
from warden.auth.outbox import EMAIL_VERIFICATION, TokenOutbox, get_outbox
from warden.auth.principal import Principal
from warden.schemas.identity import EmailCreate, EmailRead, EmailVerifyRequest

router = APIRouter(prefix="/auth/emails")


@router.get("", response_model=list[EmailRead])
async def list_emails(
    principal: Principal = Depends(get_current_principal),
    gate: AccessControlGate = Depends(get_gate),
):
    return await gate.identity.list_emails(principal.user_id)


@router.post("", response_model=EmailRead, status_code=201)
async def add_email(
    body: EmailCreate,
    principal: Principal = Depends(get_current_principal),
    gate: AccessControlGate = Depends(get_gate),
):
    email_id = await gate.identity.add_email(principal.user_id, body.email)
    return await gate.identity.get_email(email_id)


@router.delete("/{email_id}", status_code=204)
async def remove_email(
    email_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    gate: AccessControlGate = Depends(get_gate),
):
    await gate.identity.remove_email(principal.user_id, email_id)


@router.patch("/{email_id}/primary", response_model=EmailRead)
async def make_primary(
    email_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    gate: AccessControlGate = Depends(get_gate),
):
    return await gate.identity.set_primary(principal.user_id, email_id)


@router.post("/{email_id}/verification", status_code=202)
async def send_verification(
    email_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    gate: AccessControlGate = Depends(get_gate),
    outbox: TokenOutbox = Depends(get_outbox),
):
    """Issue a verification token and hand it to the outbox."""
    token = await gate.request_email_verification(principal.user_id, email_id)
    email = await gate.identity.get_email(email_id)
    await outbox.send(email.address, EMAIL_VERIFICATION, token)
    return {"sent": True}


@router.post("/verify", response_model=EmailRead)
async def verify_email(body: EmailVerifyRequest, gate: AccessControlGate = Depends(get_gate)):
    """Redeem a verification token. No bearer token needed: the link is the proof."""
    return await gate.confirm_email_verification(body.token)

"""Hand-off point for tokens that must reach a mailbox.

Email verification and password reset tokens are only proof of anything
if they travel out of band. Delivery belongs to the notification
collaborator; this core only hands the token over.
"""

from typing import Protocol

import structlog

logger = structlog.get_logger()

EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"


class TokenOutbox(Protocol):
    async def send(self, address: str, purpose: str, token: str) -> None: ...


class LoggingOutbox:
    """Default outbox: records that a token was produced, never the token."""

    async def send(self, address: str, purpose: str, token: str) -> None:
        logger.info("outbox.token_ready", purpose=purpose)


_default_outbox = LoggingOutbox()


def get_outbox() -> TokenOutbox:
    """FastAPI dependency; override to plug in a real mailer."""
    return _default_outbox

"""JWT token creation and verification.

Learn: JWT (JSON Web Token) provides stateless authentication.
- Access token: short-lived (60min), used for API calls
- Refresh token: long-lived (30 days), used to get new access tokens
- Purpose tokens: short-lived proofs for email verification and password reset

Tokens carry the user id, issued-at, expiry and a snapshot of role names;
never permissions. They cannot be revoked one by one: a per-user or
global watermark invalidates every token issued at or before it, which
costs one small lookup per verification.
"""

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from warden.auth.permissions import Role
from warden.auth.principal import Principal
from warden.config import Settings, settings as default_settings
from warden.db.engine import store_guard
from warden.db.models import GLOBAL_SCOPE, RevocationWatermark, as_utc, utcnow
from warden.errors import Expired, Malformed, Revoked
from warden.events.store import EventStore
from warden.events.types import TOKENS_REVOKED

logger = structlog.get_logger()

Clock = Callable[[], datetime]

ACCESS = "access"
REFRESH = "refresh"
EMAIL_VERIFY = "email_verify"
PASSWORD_RESET = "password_reset"

_REQUIRED_CLAIMS = ["sub", "type", "iat", "exp"]


class TokenIssuer:
    """Mints and verifies signed, time-bounded tokens."""

    def __init__(
        self,
        db: AsyncSession,
        cfg: Settings | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.cfg = cfg or default_settings
        self.clock = clock
        self.events = EventStore(db)

    # ─── Issue ───────────────────────────────────────────

    def _encode(self, user_id: uuid.UUID, token_type: str, ttl: timedelta, **extra: Any) -> str:
        now = self.clock()
        payload = {
            "sub": str(user_id),
            "type": token_type,
            # Sub-second precision, so a token minted right after a
            # revocation is not caught by it.
            "iat": now.timestamp(),
            "exp": (now + ttl).timestamp(),
            **extra,
        }
        return jwt.encode(payload, self.cfg.jwt_secret, algorithm=self.cfg.jwt_algorithm)

    def issue(self, principal: Principal) -> str:
        """Create an access token for ``principal``."""
        return self._encode(
            principal.user_id,
            ACCESS,
            timedelta(minutes=self.cfg.access_token_expire_minutes),
            roles=sorted(role.value for role in principal.roles),
        )

    def issue_refresh(self, principal: Principal) -> str:
        """Create a refresh token for ``principal``."""
        return self._encode(
            principal.user_id,
            REFRESH,
            timedelta(days=self.cfg.refresh_token_expire_days),
        )

    def issue_email_verification(self, user_id: uuid.UUID, email_id: uuid.UUID) -> str:
        return self._encode(
            user_id,
            EMAIL_VERIFY,
            timedelta(hours=self.cfg.email_verification_expire_hours),
            eid=str(email_id),
        )

    def issue_password_reset(self, user_id: uuid.UUID) -> str:
        return self._encode(
            user_id,
            PASSWORD_RESET,
            timedelta(minutes=self.cfg.password_reset_expire_minutes),
        )

    def access_expiry(self) -> datetime:
        return self.clock() + timedelta(minutes=self.cfg.access_token_expire_minutes)

    # ─── Verify ──────────────────────────────────────────

    async def decode(self, token: str, expected_type: str) -> dict:
        """Verify signature, structure, expiry and revocation. Returns claims.

        Raises Malformed, Expired or Revoked, checked in that order.
        """
        try:
            # Expiry is checked against our own clock below, not PyJWT's.
            claims = jwt.decode(
                token,
                self.cfg.jwt_secret,
                algorithms=[self.cfg.jwt_algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": _REQUIRED_CLAIMS,
                },
            )
        except jwt.InvalidTokenError:
            raise Malformed()

        if claims.get("type") != expected_type:
            raise Malformed("Wrong token type")
        try:
            user_id = uuid.UUID(str(claims["sub"]))
            issued_at = float(claims["iat"])
            expires_at = float(claims["exp"])
        except (TypeError, ValueError):
            raise Malformed()

        if self.clock().timestamp() >= expires_at:
            raise Expired()

        watermark = await self.watermark_for(user_id)
        if watermark is not None and issued_at <= watermark.timestamp():
            raise Revoked()

        claims["sub"] = user_id
        return claims

    async def verify(self, token: str) -> Principal:
        """Verify an access token. Permissions are left empty on purpose."""
        claims = await self.decode(token, ACCESS)
        try:
            roles = frozenset(Role(name) for name in claims.get("roles", []))
        except (TypeError, ValueError):
            raise Malformed("Unknown role in token")
        return Principal(
            user_id=claims["sub"],
            roles=roles,
            access_token=token,
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )

    # ─── Revocation watermarks ───────────────────────────

    @store_guard
    async def watermark_for(self, user_id: uuid.UUID) -> Optional[datetime]:
        """Latest of the global and the user's own watermark, if any."""
        result = await self.db.execute(
            select(RevocationWatermark.revoked_before).where(
                RevocationWatermark.scope.in_((GLOBAL_SCOPE, str(user_id)))
            )
        )
        marks = [as_utc(mark) for mark in result.scalars().all()]
        return max(marks) if marks else None

    async def revoke_user(
        self, user_id: uuid.UUID, at: Optional[datetime] = None
    ) -> datetime:
        """Invalidate every token for ``user_id`` issued at or before ``at``."""
        return await self._raise_watermark(str(user_id), user_id, at)

    async def revoke_all(self, at: Optional[datetime] = None) -> datetime:
        """Invalidate every token for every user issued at or before ``at``."""
        return await self._raise_watermark(GLOBAL_SCOPE, None, at)

    @store_guard
    async def _raise_watermark(
        self, scope: str, user_id: Optional[uuid.UUID], at: Optional[datetime]
    ) -> datetime:
        at = as_utc(at or self.clock())
        mark = await self.db.get(RevocationWatermark, scope)
        if mark is None:
            mark = RevocationWatermark(scope=scope, user_id=user_id, revoked_before=at)
            self.db.add(mark)
        elif as_utc(mark.revoked_before) < at:
            mark.revoked_before = at
        else:
            # Watermarks only move forward.
            return as_utc(mark.revoked_before)

        await self.events.append(
            stream_id=f"user:{user_id}" if user_id else "tokens",
            event_type=TOKENS_REVOKED,
            data={"scope": scope, "revoked_before": at.isoformat()},
        )
        await self.db.commit()
        logger.info("tokens.revoked", scope=scope)
        return at

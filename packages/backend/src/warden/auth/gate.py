"""Access control gate — the single entry point for collaborators.

Learn: The gate composes the credential store, identity graph,
permission resolver and token issuer. It is where authentication errors
that could reveal whether an account exists ("no such email", "no
password set", "wrong password") collapse into one InvalidCredentials.

Permissions are resolved from the store on every authorization check;
the role snapshot inside a token is never trusted for a decision.
"""

import uuid
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from warden.auth.jwt import EMAIL_VERIFY, PASSWORD_RESET, REFRESH, Clock, TokenIssuer
from warden.auth.password import check_strength
from warden.auth.permissions import Permission
from warden.auth.principal import Principal
from warden.auth.providers import ProviderVerifier, UserinfoVerifier
from warden.config import Settings, settings as default_settings
from warden.db.engine import store_guard
from warden.db.models import Email, SocialProvider, utcnow
from warden.errors import (
    DuplicateEmail,
    Forbidden,
    IdentityConflict,
    InvalidCredentials,
    Malformed,
    NotFound,
    NotOwned,
    ProviderVerificationFailed,
)
from warden.services.credential_store import CredentialStore
from warden.services.identity_graph import IdentityGraph
from warden.services.permission_resolver import PermissionResolver

logger = structlog.get_logger()


class AccessControlGate:
    """Authenticate requests and authorize actions."""

    def __init__(
        self,
        db: AsyncSession,
        cfg: Settings | None = None,
        clock: Clock = utcnow,
        verifier: Optional[ProviderVerifier] = None,
    ):
        self.db = db
        self.cfg = cfg or default_settings
        self.identity = IdentityGraph(db, self.cfg)
        self.credentials = CredentialStore(db, self.cfg)
        self.permissions = PermissionResolver(db)
        self.tokens = TokenIssuer(db, self.cfg, clock)
        self.verifier = verifier or UserinfoVerifier(self.cfg)

    # ─── Principal construction ─────────────────────────

    async def _establish(self, user_id: uuid.UUID) -> Principal:
        """Resolve roles and permissions, then issue a token pair."""
        resolved = Principal(
            user_id=user_id,
            roles=await self.permissions.roles(user_id),
            permissions=await self.permissions.effective_permissions(user_id),
        )
        return Principal(
            user_id=resolved.user_id,
            roles=resolved.roles,
            permissions=resolved.permissions,
            access_token=self.tokens.issue(resolved),
            refresh_token=self.tokens.issue_refresh(resolved),
            expires_at=self.tokens.access_expiry(),
        )

    async def effective_permissions(self, user_id: uuid.UUID) -> frozenset[Permission]:
        return await self.permissions.effective_permissions(user_id)

    # ─── Registration ────────────────────────────────────

    async def register(self, address: str, plaintext: str) -> Principal:
        """Create a user with a password and sign them in.

        The password policy is checked before anything is written; the
        user, their email and the credential then commit together.
        """
        check_strength(plaintext, self.cfg)
        user_id = await self._register_tx(address, plaintext)
        logger.info("gate.registered", user_id=str(user_id))
        return await self._establish(user_id)

    @store_guard
    async def _register_tx(self, address: str, plaintext: str) -> uuid.UUID:
        try:
            user_id, _ = await self.identity.stage_user_with_email(address)
            await self.credentials.stage_credential(user_id, plaintext)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateEmail()
        except Exception:
            await self.db.rollback()
            raise
        return user_id

    # ─── Password sign-in ────────────────────────────────

    async def authenticate_password(self, address: str, plaintext: str) -> Principal:
        user_id = await self.identity.find_user_by_email(address)
        if user_id is None:
            await self.credentials.burn_verification(plaintext)
            logger.info("gate.login_failed", reason="unknown_email")
            raise InvalidCredentials()

        try:
            ok = await self.credentials.verify_credential(user_id, plaintext)
        except NotFound:
            ok = False
        if not ok:
            logger.info("gate.login_failed", user_id=str(user_id))
            raise InvalidCredentials()

        logger.info("gate.login", user_id=str(user_id), method="password")
        return await self._establish(user_id)

    # ─── Provider sign-in ────────────────────────────────

    async def authenticate_provider(
        self,
        provider: SocialProvider,
        provider_subject: str,
        provider_email: str,
    ) -> Principal:
        """Sign in with an already-verified provider identity.

        Existing link → that user. Otherwise the owner of a *verified*
        email matching the provider's gets the link; an unverified match is
        refused. Failing both, a new user is provisioned when policy allows.
        """
        if not provider_subject or not provider_email:
            raise ProviderVerificationFailed()

        user_id = await self.identity.find_user_by_social_login(provider, provider_subject)
        if user_id is None:
            user_id = await self._link_or_provision(
                provider, provider_subject, provider_email
            )

        logger.info("gate.login", user_id=str(user_id), method=provider.value)
        return await self._establish(user_id)

    @store_guard
    async def _link_or_provision(
        self, provider: SocialProvider, provider_subject: str, provider_email: str
    ) -> uuid.UUID:
        """Find or provision the owner of a new provider identity and link it.

        A provisioned user and their link commit together.
        """
        provisioned = False
        try:
            email = await self.identity.find_email(provider_email)
            if email is not None:
                if not email.verified:
                    # Linking here would hand the account of whoever typed this
                    # address first to the provider identity.
                    raise IdentityConflict("Email is registered but not verified")
                user_id = email.user_id
            elif not self.cfg.auto_provision_provider_users:
                raise InvalidCredentials()
            else:
                user_id, _ = await self.identity.stage_user_with_email(
                    provider_email, verified=True
                )
                provisioned = True
            await self.identity.stage_social_login(
                user_id, provider, provider_subject, provider_email
            )
            await self.db.commit()
        except (IntegrityError, DuplicateEmail):
            await self.db.rollback()
            raise IdentityConflict()
        except Exception:
            await self.db.rollback()
            raise
        if provisioned:
            logger.info("gate.provisioned", user_id=str(user_id))
        logger.info("identity.social_login_linked", user_id=str(user_id), provider=provider.value)
        return user_id


    async def authenticate_provider_token(
        self, provider: SocialProvider, artifact: str
    ) -> Principal:
        """Verify a provider artifact, then sign in as that identity."""
        identity = await self.verifier.verify(provider, artifact)
        return await self.authenticate_provider(
            identity.provider, identity.subject, identity.email
        )

    # ─── Tokens ──────────────────────────────────────────

    async def authenticate_token(self, token: str) -> Principal:
        """Verify an access token and attach freshly resolved permissions."""
        snapshot = await self.tokens.verify(token)
        if await self.identity.get_user(snapshot.user_id) is None:
            raise InvalidCredentials()
        return Principal(
            user_id=snapshot.user_id,
            roles=await self.permissions.roles(snapshot.user_id),
            permissions=await self.permissions.effective_permissions(snapshot.user_id),
            access_token=token,
            expires_at=snapshot.expires_at,
        )

    async def authorize(self, token: str, required_permission: Permission) -> Principal:
        principal = await self.authenticate_token(token)
        if not principal.has_permission(required_permission):
            logger.info(
                "gate.forbidden",
                user_id=str(principal.user_id),
                permission=required_permission.value,
            )
            raise Forbidden()
        return principal

    async def refresh(self, refresh_token: str) -> Principal:
        """Exchange a refresh token for a new token pair."""
        claims = await self.tokens.decode(refresh_token, REFRESH)
        if await self.identity.get_user(claims["sub"]) is None:
            raise InvalidCredentials()
        return await self._establish(claims["sub"])

    async def revoke_tokens(self, user_id: uuid.UUID) -> None:
        """Sign a user out everywhere."""
        await self.tokens.revoke_user(user_id)

    # ─── Email verification ──────────────────────────────

    async def request_email_verification(
        self, user_id: uuid.UUID, email_id: uuid.UUID
    ) -> str:
        """Return a verification token for the mail collaborator to deliver."""
        email = await self.identity.get_email(email_id)
        if email is None:
            raise NotFound("Email not found")
        if email.user_id != user_id:
            raise NotOwned()
        return self.tokens.issue_email_verification(user_id, email_id)

    async def confirm_email_verification(self, token: str) -> Email:
        claims = await self.tokens.decode(token, EMAIL_VERIFY)
        try:
            email_id = uuid.UUID(str(claims.get("eid")))
        except ValueError:
            raise Malformed()
        email = await self.identity.get_email(email_id)
        if email is None or email.user_id != claims["sub"]:
            raise NotFound("Email not found")
        return await self.identity.verify_email(email_id)

    # ─── Passwords ───────────────────────────────────────

    async def change_password(
        self, user_id: uuid.UUID, current: str, new: str
    ) -> Principal:
        """Change a password, sign out other sessions, return fresh tokens."""
        await self.credentials.change_password(user_id, current, new)
        await self.tokens.revoke_user(user_id)
        return await self._establish(user_id)

    async def request_password_reset(self, address: str) -> Optional[str]:
        """Return a reset token, or None for an unknown address.

        Callers must respond identically in both cases.
        """
        user_id = await self.identity.find_user_by_email(address)
        if user_id is None:
            return None
        return self.tokens.issue_password_reset(user_id)

    async def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password from a reset token and revoke all old tokens.

        The revocation also retires the reset token itself.
        """
        claims = await self.tokens.decode(token, PASSWORD_RESET)
        await self.credentials.set_credential(claims["sub"], new_password)
        await self.tokens.revoke_user(claims["sub"])
        logger.info("gate.password_reset", user_id=str(claims["sub"]))

"""Identity graph — users, their emails, and linked provider identities.

Learn: Every mutation here is one transaction: the rows, the audit event
and any invariant maintenance (clearing the previous primary email, for
instance) commit together or not at all. The stage_* variants flush
without committing so the gate can fold several of them into one
transaction.

Invariants this service maintains on top of the schema:
- an email address belongs to at most one user, compared case-insensitively
  (the database index is the final arbiter; the pre-check only gives a
  friendlier error on the common path)
- a user has exactly one primary email while they have any email at all
- a (provider, provider_subject) pair is linked to exactly one user
"""

import base64
import uuid
from datetime import datetime
from typing import NoReturn, Optional

import structlog
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from warden.auth.permissions import Role
from warden.config import Settings, settings as default_settings
from warden.db.engine import store_guard
from warden.db.models import (
    Credential,
    Email,
    RevocationWatermark,
    SocialLogin,
    SocialProvider,
    User,
    UserPermission,
    UserRole,
    as_utc,
)
from warden.errors import (
    DuplicateEmail,
    IdentityConflict,
    InvalidCursor,
    NotFound,
    NotOwned,
    Unverified,
)
from warden.events.store import EventStore
from warden.events.types import (
    EMAIL_ADDED,
    EMAIL_PRIMARY_CHANGED,
    EMAIL_REMOVED,
    EMAIL_VERIFIED,
    ROLE_ASSIGNED,
    SOCIAL_LOGIN_LINKED,
    USER_CREATED,
    USER_DELETED,
)

logger = structlog.get_logger()


DEFAULT_PAGE_SIZE = 25


def normalize_address(address: str) -> str:
    return address.strip()


def encode_cursor(created_at: datetime, user_id: uuid.UUID) -> str:
    """Opaque page cursor naming the first user of the next page."""
    raw = f"{user_id},{as_utc(created_at).isoformat()}"
    return base64.urlsafe_b64encode(raw.encode()).decode()


def decode_cursor(cursor: str) -> tuple[datetime, uuid.UUID]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
        user_part, _, created_part = raw.partition(",")
        return as_utc(datetime.fromisoformat(created_part)), uuid.UUID(user_part)
    except ValueError:
        raise InvalidCursor()


class IdentityGraph:
    """All mutations to User, Email, SocialLogin and role membership."""

    def __init__(self, db: AsyncSession, cfg: Settings | None = None):
        self.db = db
        self.cfg = cfg or default_settings
        self.events = EventStore(db)

    # ─── Lookups ─────────────────────────────────────────

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        return await self.db.get(User, user_id)

    async def _require_user(self, user_id: uuid.UUID) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    async def get_email(self, email_id: uuid.UUID) -> Email | None:
        return await self.db.get(Email, email_id)

    async def find_email(self, address: str) -> Email | None:
        """Case-insensitive lookup across all users."""
        result = await self.db.execute(
            select(Email).where(
                func.lower(Email.address) == normalize_address(address).lower()
            )
        )
        return result.scalars().first()

    async def find_user_by_email(self, address: str) -> Optional[uuid.UUID]:
        email = await self.find_email(address)
        return email.user_id if email else None

    async def list_emails(self, user_id: uuid.UUID) -> list[Email]:
        result = await self.db.execute(
            select(Email)
            .where(Email.user_id == user_id)
            .order_by(Email.is_primary.desc(), Email.created_at, Email.address)
        )
        return list(result.scalars().all())

    async def primary_email(self, user_id: uuid.UUID) -> Email | None:
        result = await self.db.execute(
            select(Email).where(Email.user_id == user_id, Email.is_primary.is_(True))
        )
        return result.scalars().first()

    async def _find_social_login(
        self, provider: SocialProvider, provider_subject: str
    ) -> SocialLogin | None:
        result = await self.db.execute(
            select(SocialLogin).where(
                SocialLogin.provider == provider,
                SocialLogin.provider_subject == provider_subject,
            )
        )
        return result.scalars().first()

    @store_guard
    async def find_user_by_social_login(
        self, provider: SocialProvider, provider_subject: str
    ) -> Optional[uuid.UUID]:
        link = await self._find_social_login(provider, provider_subject)
        return link.user_id if link else None

    async def list_social_logins(self, user_id: uuid.UUID) -> list[SocialLogin]:
        result = await self.db.execute(
            select(SocialLogin)
            .where(SocialLogin.user_id == user_id)
            .order_by(SocialLogin.created_at)
        )
        return list(result.scalars().all())

    async def list_roles(self, user_id: uuid.UUID) -> frozenset[Role]:
        result = await self.db.execute(
            select(UserRole.role).where(UserRole.user_id == user_id)
        )
        return frozenset(result.scalars().all())

    @store_guard
    async def list_users(
        self, cursor: Optional[str] = None, limit: int = DEFAULT_PAGE_SIZE
    ) -> tuple[list[tuple[User, Optional[str]]], Optional[str]]:
        """Users newest first with their primary address, keyset-paginated.

        Learn: Pages are keyed on (created_at, id) rather than an offset,
        so users created while a client pages through do not shift rows
        between pages. Returns the page and the cursor of the next one,
        None on the last page.
        """
        stmt = (
            select(User, Email.address)
            .outerjoin(Email, and_(Email.user_id == User.id, Email.is_primary.is_(True)))
            .order_by(User.created_at.desc(), User.id.desc())
            .limit(limit + 1)
        )
        if cursor is not None:
            created_at, user_id = decode_cursor(cursor)
            stmt = stmt.where(
                or_(
                    User.created_at < created_at,
                    and_(User.created_at == created_at, User.id <= user_id),
                )
            )
        rows = [(user, address) for user, address in (await self.db.execute(stmt)).all()]
        next_cursor = None
        if len(rows) > limit:
            first_of_next, _ = rows.pop()
            next_cursor = encode_cursor(first_of_next.created_at, first_of_next.id)
        return rows, next_cursor

    # ─── Users ───────────────────────────────────────────

    async def stage_user_with_email(
        self, address: str, verified: bool = False
    ) -> tuple[uuid.UUID, uuid.UUID]:
        """Stage a new user and their primary email; flush, do not commit.

        ``verified`` is only set by callers that hold a verification proof,
        such as a provider that vouches for the address.
        """
        address = normalize_address(address)
        if await self.find_email(address) is not None:
            raise DuplicateEmail()

        user = User()
        self.db.add(user)
        await self.db.flush()
        email = Email(
            user_id=user.id, address=address, verified=verified, is_primary=True
        )
        self.db.add(email)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateEmail()

        await self.events.append(
            stream_id=f"user:{user.id}",
            event_type=USER_CREATED,
            data={"user_id": str(user.id), "email_id": str(email.id)},
        )
        return user.id, email.id

    @store_guard
    async def create_user_with_email(
        self, address: str, verified: bool = False
    ) -> tuple[uuid.UUID, uuid.UUID]:
        """Create a user whose first (and therefore primary) email is ``address``."""
        user_id, email_id = await self.stage_user_with_email(address, verified)
        await self._commit_or_duplicate()
        logger.info("identity.user_created", user_id=str(user_id))
        return user_id, email_id

    @store_guard
    async def delete_user(self, user_id: uuid.UUID) -> None:
        """Delete a user and everything they own, in one transaction.

        Grants this user made to others survive with granted_by cleared.
        """
        await self._require_user(user_id)

        await self.db.execute(
            update(UserPermission)
            .where(UserPermission.granted_by == user_id)
            .values(granted_by=None)
        )
        for model in (SocialLogin, Email, UserRole, UserPermission, Credential, RevocationWatermark):
            await self.db.execute(delete(model).where(model.user_id == user_id))
        await self.db.execute(delete(User).where(User.id == user_id))

        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=USER_DELETED,
            data={"user_id": str(user_id)},
        )
        await self.db.commit()
        self.db.expunge_all()
        logger.info("identity.user_deleted", user_id=str(user_id))

    # ─── Emails ──────────────────────────────────────────

    @store_guard
    async def add_email(self, user_id: uuid.UUID, address: str) -> uuid.UUID:
        """Attach a new unverified, non-primary email to a user."""
        await self._require_user(user_id)
        address = normalize_address(address)
        if await self.find_email(address) is not None:
            raise DuplicateEmail()

        # A user left without a primary (only possible through direct
        # store edits) gets one back here.
        is_primary = await self.primary_email(user_id) is None
        email = Email(
            user_id=user_id, address=address, verified=False, is_primary=is_primary
        )
        self.db.add(email)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateEmail()

        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=EMAIL_ADDED,
            data={"email_id": str(email.id), "verified": False},
        )
        await self._commit_or_duplicate()
        return email.id

    @store_guard
    async def verify_email(self, email_id: uuid.UUID) -> Email:
        """Mark an email verified. Idempotent; verified never goes back to False."""
        email = await self.db.get(Email, email_id)
        if email is None:
            raise NotFound("Email not found")
        if email.verified:
            return email

        email.verified = True
        await self.events.append(
            stream_id=f"user:{email.user_id}",
            event_type=EMAIL_VERIFIED,
            data={"email_id": str(email.id)},
        )
        await self.db.commit()
        logger.info("identity.email_verified", user_id=str(email.user_id))
        return email

    @store_guard
    async def set_primary(self, user_id: uuid.UUID, email_id: uuid.UUID) -> Email:
        """Make ``email_id`` the user's only primary email.

        Clearing the previous primary and setting the new one happen in the
        same transaction. Whether the target must be verified first is the
        ``require_verified_primary`` setting.
        """
        email = await self.db.get(Email, email_id)
        if email is None:
            raise NotFound("Email not found")
        if email.user_id != user_id:
            raise NotOwned()
        if self.cfg.require_verified_primary and not email.verified:
            raise Unverified()
        if email.is_primary:
            return email

        await self.db.execute(
            update(Email)
            .where(Email.user_id == user_id, Email.id != email_id)
            .values(is_primary=False)
        )
        email.is_primary = True
        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=EMAIL_PRIMARY_CHANGED,
            data={"email_id": str(email_id)},
        )
        await self.db.commit()
        await self.db.refresh(email)
        return email

    @store_guard
    async def remove_email(self, user_id: uuid.UUID, email_id: uuid.UUID) -> None:
        """Delete a non-primary email. Social logins attached to it go with it."""
        email = await self.db.get(Email, email_id)
        if email is None:
            raise NotFound("Email not found")
        if email.user_id != user_id:
            raise NotOwned()
        if email.is_primary:
            raise IdentityConflict("Cannot remove the primary email")

        await self.db.execute(delete(SocialLogin).where(SocialLogin.email_id == email_id))
        await self.db.execute(delete(Email).where(Email.id == email_id))
        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=EMAIL_REMOVED,
            data={"email_id": str(email_id)},
        )
        await self.db.commit()
        self.db.expunge_all()

    # ─── Social logins ───────────────────────────────────

    async def stage_social_login(
        self,
        user_id: uuid.UUID,
        provider: SocialProvider,
        provider_subject: str,
        provider_email: str,
    ) -> uuid.UUID:
        """Stage a provider link for a user; flush, do not commit.

        1. Already linked to another user → IdentityConflict.
        2. Already linked to this user → existing id, nothing changes.
        3. Attach an email: the user's own email with the provider's address
           if there is one (reused as-is; its verified flag is left alone),
           otherwise a new verified, non-primary email. An address that
           belongs to a different user → IdentityConflict.
        4. Insert the link. Losing a race for the same pair surfaces as
           IdentityConflict via the unique constraint; the transaction is
           rolled back.
        """
        existing = await self._find_social_login(provider, provider_subject)
        if existing is not None:
            if existing.user_id != user_id:
                logger.warning(
                    "identity.link_conflict",
                    provider=provider.value,
                    user_id=str(user_id),
                )
                raise IdentityConflict()
            return existing.id

        await self._require_user(user_id)

        email = await self.find_email(provider_email)
        if email is not None and email.user_id != user_id:
            raise IdentityConflict("Provider email belongs to another account")

        try:
            if email is None:
                email = Email(
                    user_id=user_id,
                    address=normalize_address(provider_email),
                    verified=True,
                    is_primary=await self.primary_email(user_id) is None,
                )
                self.db.add(email)
                await self.db.flush()
                await self.events.append(
                    stream_id=f"user:{user_id}",
                    event_type=EMAIL_ADDED,
                    data={"email_id": str(email.id), "verified": True, "source": provider.value},
                )

            link = SocialLogin(
                email_id=email.id,
                user_id=user_id,
                provider=provider,
                provider_subject=provider_subject,
            )
            self.db.add(link)
            await self.db.flush()
        except IntegrityError:
            await self._lost_link_race(provider, user_id)

        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=SOCIAL_LOGIN_LINKED,
            data={"social_login_id": str(link.id), "provider": provider.value},
        )
        return link.id

    @store_guard
    async def link_social_login(
        self,
        user_id: uuid.UUID,
        provider: SocialProvider,
        provider_subject: str,
        provider_email: str,
    ) -> uuid.UUID:
        """Link a provider identity to a user. Returns the SocialLogin id."""
        link_id = await self.stage_social_login(
            user_id, provider, provider_subject, provider_email
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self._lost_link_race(provider, user_id)
        logger.info("identity.social_login_linked", provider=provider.value, user_id=str(user_id))
        return link_id

    async def _lost_link_race(self, provider: SocialProvider, user_id: uuid.UUID) -> NoReturn:
        await self.db.rollback()
        logger.warning(
            "identity.link_race_lost", provider=provider.value, user_id=str(user_id)
        )
        raise IdentityConflict()

    # ─── Roles ───────────────────────────────────────────

    @store_guard
    async def assign_role(
        self,
        user_id: uuid.UUID,
        role: Role,
        assigned_by: Optional[uuid.UUID] = None,
    ) -> None:
        """Give a user a role. Assigning a role twice is a no-op."""
        await self._require_user(user_id)
        if role in await self.list_roles(user_id):
            return

        self.db.add(UserRole(user_id=user_id, role=role))
        try:
            await self.db.flush()
        except IntegrityError:
            # Concurrent assignment of the same role already won.
            await self.db.rollback()
            return
        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=ROLE_ASSIGNED,
            data={
                "role": role.value,
                "assigned_by": str(assigned_by) if assigned_by else None,
            },
        )
        await self.db.commit()

    # ─── Helpers ─────────────────────────────────────────

    async def _commit_or_duplicate(self) -> None:
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateEmail()

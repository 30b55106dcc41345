"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Alembic auto-generates migrations by comparing these
models to the actual DB.

Key concepts:
- UUID primary keys generated in Python (portable across Postgres and SQLite)
- Every row a user owns references users.id with ON DELETE CASCADE
- Uniqueness that the identity graph relies on (email address, provider
  subject, role membership) is enforced here, by the database, so that
  concurrent writers are arbitrated by the store and not by the application
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from warden.auth.permissions import Permission, Role


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    # Persist the enum *value* ("user.view"), not the member name.
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


JsonDoc = JSON().with_variant(JSONB, "postgresql")


class SocialProvider(str, enum.Enum):
    """External identity providers a user can link."""

    GOOGLE = "google"
    FACEBOOK = "facebook"
    GITHUB = "github"
    DISCORD = "discord"


# ══════════════════════════════════════════════════════════════
# Identity graph: users, emails, social logins
# ══════════════════════════════════════════════════════════════


class User(Base):
    """Root identity anchor.

    Owns emails, social logins, roles, direct grants and a credential.
    Deleting a user deletes all of them.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    # Set in Python as well, so keyset pagination sees sub-second order.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=utcnow
    )


class Email(Base):
    """An address owned by a user.

    Address uniqueness is global and case-insensitive (see the functional
    index below). At most one primary email per user is an application
    invariant maintained by IdentityGraph, not by this table.
    """

    __tablename__ = "emails"
    __table_args__ = (Index("idx_emails_user", "user_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    address: Mapped[str] = mapped_column(String(320), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_primary: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, onupdate=utcnow
    )


Index("uq_emails_address_ci", func.lower(Email.address), unique=True)


class SocialLogin(Base):
    """Link between a user, one of their emails, and a provider subject.

    (provider, provider_subject) is unique system-wide; this constraint is
    the arbitration point when two requests race to link the same identity.
    """

    __tablename__ = "social_logins"
    __table_args__ = (
        UniqueConstraint(
            "provider", "provider_subject", name="uq_social_logins_provider_subject"
        ),
        Index("idx_social_logins_user", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    email_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[SocialProvider] = mapped_column(
        _enum(SocialProvider, "social_provider"), nullable=False
    )
    provider_subject: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ══════════════════════════════════════════════════════════════
# Authorization: roles, role → permission config, direct grants
# ══════════════════════════════════════════════════════════════


class UserRole(Base):
    """Role membership. One row per (user, role)."""

    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[Role] = mapped_column(_enum(Role, "app_role"), nullable=False)


class RolePermission(Base):
    """Static role → permission mapping. Seeded at bootstrap."""

    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint(
            "role", "permission", name="uq_role_permissions_role_permission"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    role: Mapped[Role] = mapped_column(_enum(Role, "app_role"), nullable=False)
    permission: Mapped[Permission] = mapped_column(
        _enum(Permission, "app_permission"), nullable=False
    )


class UserPermission(Base):
    """Direct grant. Identity is (user_id, permission).

    granted_by survives the granter's deletion as NULL.
    """

    __tablename__ = "user_permissions"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    permission: Mapped[Permission] = mapped_column(
        _enum(Permission, "app_permission"), primary_key=True
    )
    granted_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ══════════════════════════════════════════════════════════════
# Credentials and token revocation
# ══════════════════════════════════════════════════════════════


class Credential(Base):
    """Password material for a user. Only the argon2/bcrypt hash is stored."""

    __tablename__ = "credentials"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


GLOBAL_SCOPE = "*"


class RevocationWatermark(Base):
    """Tokens issued at or before ``revoked_before`` are invalid.

    scope is either GLOBAL_SCOPE or a user id string; a global watermark
    applies to every user.
    """

    __tablename__ = "revocation_watermarks"

    scope: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    revoked_before: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


# ══════════════════════════════════════════════════════════════
# Audit
# ══════════════════════════════════════════════════════════════


class Event(Base):
    """Append-only audit log of identity mutations.

    stream_id examples: "user:<uuid>"
    type examples: "user.created", "permission.granted"
    """

    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_stream", "stream_id", "id"),
        Index("idx_events_type", "type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JsonDoc, nullable=False)
    meta: Mapped[dict] = mapped_column(
        "metadata", JsonDoc, nullable=False, default=dict
    )
    # Python attr is "meta" because "metadata" is reserved by SQLAlchemy.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

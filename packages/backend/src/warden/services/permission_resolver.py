"""Permission resolver — effective permissions from grants and roles.

Learn: A user's effective permissions are the union of
  (a) permissions granted to them directly, and
  (b) every permission mapped to every role they hold.
There is no deny primitive, so adding a grant or a role can only grow
the set. Direct and role-derived grants are independent: revoking a
direct grant leaves a role-derived copy of the same permission intact.

The role → permission table is process-wide configuration: seeded into
the database at startup, loaded once into an immutable mapping, and never
touched per request. Per-user data (grants, roles) is always read fresh
from the store; nothing user-specific is cached in process.
"""

import uuid
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from warden.auth.permissions import DEFAULT_ROLE_PERMISSIONS, Permission, Role
from warden.db.engine import store_guard
from warden.db.models import RolePermission, User, UserPermission, UserRole
from warden.errors import NotFound
from warden.events.store import EventStore
from warden.events.types import PERMISSION_GRANTED, PERMISSION_REVOKED

logger = structlog.get_logger()

RoleTable = Mapping[Role, frozenset[Permission]]

_role_table: Optional[RoleTable] = None


# ─── Role table lifecycle ───────────────────────────────


async def seed_role_permissions(
    db: AsyncSession,
    mapping: Mapping[Role, Iterable[Permission]] = DEFAULT_ROLE_PERMISSIONS,
) -> int:
    """Insert any missing (role, permission) rows. Returns rows added.

    Existing rows are left alone, so running this on every startup is safe.
    """
    result = await db.execute(select(RolePermission.role, RolePermission.permission))
    present = {(role, permission) for role, permission in result.all()}
    added = 0
    for role, permissions in mapping.items():
        for permission in permissions:
            if (role, permission) not in present:
                db.add(RolePermission(role=role, permission=permission))
                added += 1
    await db.commit()
    if added:
        logger.info("permissions.role_table_seeded", rows=added)
    return added


async def load_role_permissions(db: AsyncSession) -> RoleTable:
    """Load the role table from the store and freeze it process-wide."""
    global _role_table
    result = await db.execute(select(RolePermission.role, RolePermission.permission))
    table: dict[Role, set[Permission]] = {}
    for role, permission in result.all():
        table.setdefault(role, set()).add(permission)
    _role_table = MappingProxyType(
        {role: frozenset(perms) for role, perms in table.items()}
    )
    logger.info("permissions.role_table_loaded", roles=len(_role_table))
    return _role_table


async def get_role_permissions(db: AsyncSession) -> RoleTable:
    """The loaded role table, loading it on first use."""
    if _role_table is None:
        return await load_role_permissions(db)
    return _role_table


def reset_role_permissions() -> None:
    """Forget the loaded table (next use reloads). Startup and tests only."""
    global _role_table
    _role_table = None


# ─── Resolver ───────────────────────────────────────────


class PermissionResolver:
    """Computes and mutates direct grants; reads role membership."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventStore(db)

    async def roles(self, user_id: uuid.UUID) -> frozenset[Role]:
        result = await self.db.execute(
            select(UserRole.role).where(UserRole.user_id == user_id)
        )
        return frozenset(result.scalars().all())

    async def list_direct(self, user_id: uuid.UUID) -> list[UserPermission]:
        result = await self.db.execute(
            select(UserPermission)
            .where(UserPermission.user_id == user_id)
            .order_by(UserPermission.permission)
        )
        return list(result.scalars().all())

    @store_guard
    async def effective_permissions(self, user_id: uuid.UUID) -> frozenset[Permission]:
        result = await self.db.execute(
            select(UserPermission.permission).where(UserPermission.user_id == user_id)
        )
        direct = set(result.scalars().all())

        table = await get_role_permissions(self.db)
        derived: set[Permission] = set()
        for role in await self.roles(user_id):
            derived |= table.get(role, frozenset())
        return frozenset(direct | derived)

    async def has_permission(self, user_id: uuid.UUID, permission: Permission) -> bool:
        return permission in await self.effective_permissions(user_id)

    @store_guard
    async def grant_direct(
        self,
        user_id: uuid.UUID,
        permission: Permission,
        granted_by: Optional[uuid.UUID] = None,
    ) -> None:
        """Grant a permission directly. Granting it again is a no-op."""
        if await self.db.get(User, user_id) is None:
            raise NotFound("User not found")
        existing = await self.db.get(UserPermission, (user_id, permission))
        if existing is not None:
            return

        self.db.add(
            UserPermission(user_id=user_id, permission=permission, granted_by=granted_by)
        )
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            return
        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=PERMISSION_GRANTED,
            data={
                "permission": permission.value,
                "granted_by": str(granted_by) if granted_by else None,
            },
        )
        await self.db.commit()
        logger.info(
            "permissions.granted", user_id=str(user_id), permission=permission.value
        )

    @store_guard
    async def revoke_direct(self, user_id: uuid.UUID, permission: Permission) -> bool:
        """Remove a direct grant. Returns False if there was none.

        Role-derived copies of the permission are unaffected.
        """
        result = await self.db.execute(
            delete(UserPermission).where(
                UserPermission.user_id == user_id,
                UserPermission.permission == permission,
            )
        )
        if not result.rowcount:
            await self.db.rollback()
            return False
        await self.events.append(
            stream_id=f"user:{user_id}",
            event_type=PERMISSION_REVOKED,
            data={"permission": permission.value},
        )
        await self.db.commit()
        logger.info(
            "permissions.revoked", user_id=str(user_id), permission=permission.value
        )
        return True

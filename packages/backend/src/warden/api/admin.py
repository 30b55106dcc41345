"""Admin API — user listing, roles, direct grants, revocation, deletion.

Each route is gated on a specific permission through require_permission,
which re-resolves the caller's permissions from the store.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query

from warden.auth.dependencies import get_gate, require_permission
from warden.auth.gate import AccessControlGate
from warden.auth.permissions import Permission
from warden.auth.principal import Principal
from warden.errors import NotFound
from warden.schemas.identity import (
    PermissionGrant,
    RoleAssign,
    UserPage,
    UserPermissionsRead,
    UserSummary,
)

router = APIRouter(prefix="/admin/users")


async def _permissions_view(gate: AccessControlGate, user_id: uuid.UUID) -> UserPermissionsRead:
    direct = await gate.permissions.list_direct(user_id)
    return UserPermissionsRead(
        user_id=user_id,
        roles=sorted(await gate.permissions.roles(user_id)),
        direct=sorted(grant.permission for grant in direct),
        effective=sorted(await gate.effective_permissions(user_id)),
    )


async def _require_user(gate: AccessControlGate, user_id: uuid.UUID) -> None:
    if await gate.identity.get_user(user_id) is None:
        raise NotFound("User not found")


@router.get("", response_model=UserPage)
async def list_users(
    cursor: Optional[str] = None,
    limit: int = Query(25, ge=1, le=100),
    _: Principal = Depends(require_permission(Permission.USER_VIEW)),
    gate: AccessControlGate = Depends(get_gate),
):
    rows, next_cursor = await gate.identity.list_users(cursor=cursor, limit=limit)
    return UserPage(
        data=[
            UserSummary(id=user.id, primary_email=address, created_at=user.created_at)
            for user, address in rows
        ],
        next_cursor=next_cursor,
    )


@router.get("/{user_id}/permissions", response_model=UserPermissionsRead)
async def get_permissions(
    user_id: uuid.UUID,
    _: Principal = Depends(require_permission(Permission.USER_VIEW)),
    gate: AccessControlGate = Depends(get_gate),
):
    await _require_user(gate, user_id)
    return await _permissions_view(gate, user_id)


@router.post("/{user_id}/permissions", response_model=UserPermissionsRead)
async def grant_permission(
    user_id: uuid.UUID,
    body: PermissionGrant,
    caller: Principal = Depends(require_permission(Permission.PERMISSION_GRANT)),
    gate: AccessControlGate = Depends(get_gate),
):
    await gate.permissions.grant_direct(user_id, body.permission, granted_by=caller.user_id)
    return await _permissions_view(gate, user_id)


@router.delete("/{user_id}/permissions/{permission}", response_model=UserPermissionsRead)
async def revoke_permission(
    user_id: uuid.UUID,
    permission: Permission,
    _: Principal = Depends(require_permission(Permission.PERMISSION_GRANT)),
    gate: AccessControlGate = Depends(get_gate),
):
    await _require_user(gate, user_id)
    await gate.permissions.revoke_direct(user_id, permission)
    return await _permissions_view(gate, user_id)


@router.post("/{user_id}/roles", response_model=UserPermissionsRead)
async def assign_role(
    user_id: uuid.UUID,
    body: RoleAssign,
    caller: Principal = Depends(require_permission(Permission.ROLE_ASSIGN)),
    gate: AccessControlGate = Depends(get_gate),
):
    await gate.identity.assign_role(user_id, body.role, assigned_by=caller.user_id)
    return await _permissions_view(gate, user_id)


@router.post("/{user_id}/revoke", status_code=204)
async def revoke_user_tokens(
    user_id: uuid.UUID,
    _: Principal = Depends(require_permission(Permission.USER_UPDATE)),
    gate: AccessControlGate = Depends(get_gate),
):
    await _require_user(gate, user_id)
    await gate.revoke_tokens(user_id)


@router.delete("/{user_id}", status_code=204)
async def delete_user(
    user_id: uuid.UUID,
    _: Principal = Depends(require_permission(Permission.USER_DELETE)),
    gate: AccessControlGate = Depends(get_gate),
):
    await gate.identity.delete_user(user_id)

"""The resolved identity handed to callers after authentication."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from warden.auth.permissions import Permission, Role


@dataclass(frozen=True)
class Principal:
    """A user id plus its roles and effective permissions.

    Learn: When built from a verified token alone, ``permissions`` is empty
    and ``roles`` is only the snapshot taken at issue time; good enough for
    routing, never for an authorization decision. The gate re-resolves
    permissions from the store before every such decision.
    """

    user_id: uuid.UUID
    roles: frozenset[Role] = field(default_factory=frozenset)
    permissions: frozenset[Permission] = field(default_factory=frozenset)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def has_permission(self, permission: Permission) -> bool:
        return permission in self.permissions

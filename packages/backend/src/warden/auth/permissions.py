"""Closed capability and role vocabularies.

Permissions and roles are configuration contracts shared with the
collaborators that gate catalog operations on them. They are enums, not
free-form strings, so a typo fails at import time instead of silently
granting nothing.
"""

import enum
from types import MappingProxyType


class Permission(str, enum.Enum):
    """Opaque capability names. Not user-definable at runtime."""

    USER_VIEW = "user.view"
    USER_CREATE = "user.create"
    USER_UPDATE = "user.update"
    USER_DELETE = "user.delete"
    BUSINESS_CREATE = "business.create"
    BUSINESS_UPDATE = "business.update"
    BUSINESS_DELETE = "business.delete"
    PERMISSION_GRANT = "permission.grant"
    ROLE_ASSIGN = "role.assign"


class Role(str, enum.Enum):
    """Application-wide elevated operator roles."""

    ROOT = "root"
    MODERATOR = "moderator"


# Seeded into role_permissions at startup. Editing this mapping is a
# deployment-time change, never a per-request one.
DEFAULT_ROLE_PERMISSIONS: MappingProxyType = MappingProxyType(
    {
        Role.ROOT: frozenset(Permission),
        Role.MODERATOR: frozenset(
            {
                Permission.USER_VIEW,
                Permission.BUSINESS_UPDATE,
                Permission.BUSINESS_DELETE,
            }
        ),
    }
)

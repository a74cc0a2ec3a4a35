"""Role to permission mapping used by the API layer to authorize operators."""

from collections.abc import Iterable
from enum import Enum


class Role(str, Enum):
    ADMIN = "Admin"
    OPERATOR = "Operator"
    VIEWER = "Viewer"


class Permission(str, Enum):
    VIEW_MONITORING = "monitoring:view"
    MANAGE_MONITORING = "monitoring:manage"
    VIEW_METRICS = "metrics:view"
    MANAGE_CONFIGURATION = "config:manage"
    VIEW_LOGS = "logs:view"
    MANAGE_USERS = "users:manage"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.OPERATOR: frozenset(
        {
            Permission.VIEW_MONITORING,
            Permission.MANAGE_MONITORING,
            Permission.VIEW_METRICS,
            Permission.VIEW_LOGS,
        }
    ),
    Role.VIEWER: frozenset({Permission.VIEW_MONITORING, Permission.VIEW_METRICS}),
}


def derive_permissions(
    roles: Iterable[str], explicit_permissions: Iterable[str] = ()
) -> frozenset[str]:
    """
    Effective permissions for a user.

    Role grants are unioned with the explicitly assigned permissions. Unknown
    roles grant nothing; role names are matched exactly, as they are issued.
    """
    permissions = set(explicit_permissions)
    for role_name in roles:
        try:
            role = Role(role_name)
        except ValueError:
            continue
        permissions.update(p.value for p in ROLE_PERMISSIONS[role])
    return frozenset(permissions)

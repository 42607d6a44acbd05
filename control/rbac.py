"""
Permission matrix — which role may do what.

Pure and stateless. Callers check a permission before any mutating call
reaches the storage layer:

    require_permission(actor_role, Permission.ADMIN_DB_SWITCH)
    orchestrator.switch("networked")

Roles are ordered GUEST < USER < MODERATOR < ADMIN < OWNER. OWNER holds
every permission; the other grants are listed explicitly.
"""

from enum import Enum, IntEnum

from adapters.errors import PermissionDenied


class Role(IntEnum):
    GUEST = 0
    USER = 1
    MODERATOR = 2
    ADMIN = 3
    OWNER = 4


class Permission(str, Enum):
    SESSION_READ = "session:read"
    TASKS_GENERATE = "tasks:generate"
    RESULTS_WRITE = "results:write"
    LEADERBOARD_READ = "leaderboard:read"
    VOCAB_READ = "vocab:read"
    VOCAB_MANAGE = "vocab:manage"
    SETTINGS_READ = "settings:read"
    SETTINGS_WRITE = "settings:write"
    ADMIN_RESET = "admin:reset"
    ADMIN_SEED_DEFAULTS = "admin:seed-defaults"
    ADMIN_DB_READ = "admin:db:read"
    ADMIN_DB_CONFIG = "admin:db:config"
    ADMIN_DB_SWITCH = "admin:db:switch"
    ADMIN_DB_ROLLBACK = "admin:db:rollback"
    ADMIN_DB_TEST = "admin:db:test"
    ADMIN_DIAGNOSTICS_READ = "admin:diagnostics:read"
    ADMIN_CONFIG_MANAGE = "admin:config:manage"
    ADMIN_CONFIG_PORTABILITY = "admin:config:portability"
    ADMIN_SECRET_MANAGE = "admin:secret:manage"
    ADMIN_AUDIT_READ = "admin:audit:read"
    USER_ROLE_ASSIGN = "user:role:assign"
    OWNER_BOOTSTRAP = "owner:bootstrap"


_PLAYER = frozenset({
    Permission.SESSION_READ,
    Permission.TASKS_GENERATE,
    Permission.RESULTS_WRITE,
    Permission.LEADERBOARD_READ,
    Permission.VOCAB_READ,
})

PERMISSION_MATRIX = {
    Role.GUEST: _PLAYER,
    Role.USER: _PLAYER,
    Role.MODERATOR: _PLAYER | {
        Permission.ADMIN_DIAGNOSTICS_READ,
        Permission.ADMIN_AUDIT_READ,
    },
    # ADMIN: everything except assigning roles
    Role.ADMIN: frozenset(Permission) - {Permission.USER_ROLE_ASSIGN},
    Role.OWNER: frozenset(Permission),
}


def normalize_role(role) -> Role:
    """Role from a name or a Role; anything unknown is GUEST."""
    if isinstance(role, Role):
        return role
    if not role:
        return Role.GUEST
    return Role.__members__.get(str(role).strip().upper(), Role.GUEST)


def _permission(permission):
    try:
        return Permission(permission)
    except ValueError:
        return None


def has_permission(role, permission) -> bool:
    p = _permission(permission)
    return p is not None and p in PERMISSION_MATRIX[normalize_role(role)]


def compare_roles(a, b) -> int:
    """-1, 0 or 1 as role ``a`` ranks below, equal to or above ``b``."""
    ra, rb = normalize_role(a), normalize_role(b)
    return (ra > rb) - (ra < rb)


def require_permission(role, permission):
    if not has_permission(role, permission):
        value = permission.value if isinstance(permission, Permission) else str(permission)
        raise PermissionDenied(
            f"Role {normalize_role(role).name} lacks permission {value}",
            details={"permission": value},
        )

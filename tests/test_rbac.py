"""Permission matrix."""

import pytest

from adapters import PermissionDenied
from control.rbac import (
    PERMISSION_MATRIX,
    Permission,
    Role,
    compare_roles,
    has_permission,
    normalize_role,
    require_permission,
)


def test_role_order():
    assert Role.GUEST < Role.USER < Role.MODERATOR < Role.ADMIN < Role.OWNER


@pytest.mark.parametrize("raw,expected", [
    ("owner", Role.OWNER),
    (" Admin ", Role.ADMIN),
    (Role.USER, Role.USER),
    ("superuser", Role.GUEST),
    (None, Role.GUEST),
    ("", Role.GUEST),
])
def test_normalize_role(raw, expected):
    assert normalize_role(raw) is expected


def test_owner_holds_everything():
    assert all(has_permission("OWNER", p) for p in Permission)


def test_admin_cannot_assign_roles():
    assert has_permission("ADMIN", Permission.ADMIN_DB_SWITCH)
    assert has_permission("ADMIN", "admin:db:rollback")
    assert not has_permission("ADMIN", Permission.USER_ROLE_ASSIGN)


def test_moderator_reads_diagnostics_only():
    assert has_permission("MODERATOR", Permission.ADMIN_AUDIT_READ)
    assert not has_permission("MODERATOR", Permission.ADMIN_CONFIG_MANAGE)


def test_guest_and_user_share_player_grants():
    assert PERMISSION_MATRIX[Role.GUEST] == PERMISSION_MATRIX[Role.USER]
    assert has_permission("GUEST", Permission.RESULTS_WRITE)
    assert not has_permission("USER", Permission.VOCAB_MANAGE)


def test_unknown_permission_is_never_granted():
    assert not has_permission("OWNER", "admin:everything")


def test_compare_roles():
    assert compare_roles("ADMIN", "USER") == 1
    assert compare_roles("user", "USER") == 0
    assert compare_roles("GUEST", "OWNER") == -1
    assert compare_roles("nobody", "GUEST") == 0


def test_require_permission():
    require_permission("OWNER", Permission.OWNER_BOOTSTRAP)
    with pytest.raises(PermissionDenied) as exc_info:
        require_permission("USER", Permission.ADMIN_DB_SWITCH)
    assert exc_info.value.status == 403
    assert exc_info.value.details == {"permission": "admin:db:switch"}

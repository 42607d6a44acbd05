"""
Control layer — the decisions on top of the adapters.

    MigrationManager    ordered per-backend schema scripts, apply/status/rollback
    ConfigStore         allow-listed, cached, versioned app_config access
    ActiveBackend       the one pointer naming the backend that serves traffic
    SnapshotStore       the retained rollback snapshot and the switch audit log
    SwitchOrchestrator  dump → restore → verify → flip, and rollback
    Runtime             all of the above wired from StorageSettings

Usage:

    from control import Runtime, load_settings

    rt = Runtime(load_settings()).open()
    rt.switch("networked", requested_by="admin")
"""

from .config_store import ConfigStore, SafeConfigKey, Scope
from .migrations import Migration, MigrationManager
from .pointer import ActiveBackend
from .rbac import Permission, Role, compare_roles, has_permission, normalize_role, require_permission
from .runtime import Runtime
from .settings import (
    EmbeddedSettings,
    NetworkedSettings,
    StorageSettings,
    create_adapter,
    load_settings,
)
from .snapshots import SnapshotStore
from .switch import SwitchOrchestrator, SwitchState

__all__ = [
    "ActiveBackend",
    "ConfigStore",
    "EmbeddedSettings",
    "Migration",
    "MigrationManager",
    "NetworkedSettings",
    "Permission",
    "Role",
    "Runtime",
    "SafeConfigKey",
    "Scope",
    "SnapshotStore",
    "StorageSettings",
    "SwitchOrchestrator",
    "SwitchState",
    "compare_roles",
    "create_adapter",
    "has_permission",
    "load_settings",
    "normalize_role",
    "require_permission",
]

"""
Runtime — wires settings, adapters, control store, config and switching.

    rt = Runtime(load_settings()).open()
    rt.active().insert_leaderboard({...})
    rt.config().set_safe("theme.defaults", {...})
    rt.orchestrator.switch("networked", requested_by="admin")
    rt.close()

Data adapters open lazily, so an unreachable networked backend only
matters once something actually uses it.
"""

import logging

from adapters.maintenance import MaintenanceGate

from .config_store import ConfigStore
from .migrations import MigrationManager
from .pointer import ActiveBackend
from .settings import create_adapter, create_control_store
from .snapshots import SnapshotStore
from .switch import SwitchOrchestrator

log = logging.getLogger(__name__)


class Runtime:

    def __init__(self, settings, gate=None):
        self.settings = settings
        self.gate = gate or MaintenanceGate()
        self.adapters = {"embedded": create_adapter("embedded", settings, self.gate)}
        if settings.postgres.configured:
            self.adapters["networked"] = create_adapter("networked", settings, self.gate)
        self.control = create_control_store(settings, self.gate)
        self.pointer = ActiveBackend(ConfigStore(self.control), default=settings.backend)
        self.snapshots = SnapshotStore(settings.dump_directory)
        self.orchestrator = SwitchOrchestrator(self.adapters, self.pointer, self.snapshots, self.gate)
        self._configs = {}

    def open(self, migrate=True):
        """Open the control store and the active backend; apply migrations."""
        self.control.init()
        MigrationManager(self.control).apply()
        active = self.adapter(self.pointer.get())
        if migrate:
            MigrationManager(active).apply()
        return self

    def adapter(self, kind):
        if kind not in self.adapters:
            # raises the "not configured" error for a networked backend
            create_adapter(kind, self.settings)
        return self.adapters[kind].init()

    def active(self):
        return self.adapter(self.pointer.get())

    def migrations(self, kind=None) -> MigrationManager:
        return MigrationManager(self.adapter(kind or self.pointer.get()))

    def config(self) -> ConfigStore:
        """Config store over the active backend's app_config rows."""
        kind = self.pointer.get()
        if kind not in self._configs:
            self._configs[kind] = ConfigStore(self.adapter(kind))
        return self._configs[kind]

    def switch(self, target, mode="copy-then-switch", verify=True, requested_by="system") -> dict:
        result = self.orchestrator.switch(target, mode=mode, verify=verify, requested_by=requested_by)
        self._invalidate_configs()
        return result

    def rollback(self, requested_by="system") -> dict:
        result = self.orchestrator.rollback(requested_by=requested_by)
        self._invalidate_configs()
        return result

    def _invalidate_configs(self):
        for store in self._configs.values():
            store.invalidate()

    def close(self):
        for adapter in self.adapters.values():
            adapter.close()
        self.control.close()

    def __repr__(self):
        return f"<Runtime adapters={sorted(self.adapters)} control={self.control!r}>"

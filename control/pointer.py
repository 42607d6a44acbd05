"""
Active-backend pointer.

One value, "embedded" or "networked", stored as the ``db.driver_meta``
config entry of the control store. Nothing else in the process keeps its
own copy; every reader goes through ActiveBackend.get().
"""

import logging

from .config_store import SafeConfigKey

log = logging.getLogger(__name__)

BACKENDS = ("embedded", "networked")


class ActiveBackend:

    def __init__(self, config_store, default="embedded"):
        self.store = config_store
        self.default = default

    def meta(self) -> dict:
        """The stored driver meta, or a fresh one naming the default backend."""
        meta = self.store.get(SafeConfigKey.DB_DRIVER_META)
        if not meta:
            return {
                "active_driver": self.default,
                "previous_driver": None,
                "snapshot_file": None,
                "switched_at": None,
                "switched_by": None,
                "rolled_back_at": None,
            }
        return dict(meta)

    def get(self) -> str:
        return self.meta()["active_driver"]

    def flip(self, target, updated_by="system", **fields) -> dict:
        """
        Point traffic at ``target``. This write is the commit point of a
        switch or rollback.

        ``fields`` overwrite the remaining meta (previous_driver,
        snapshot_file, switched_at, ...).
        """
        meta = self.meta()
        meta.update(fields)
        meta["active_driver"] = target
        result = self.store.set_safe(SafeConfigKey.DB_DRIVER_META, meta, updated_by=updated_by)
        log.info("active backend → %s (by %s)", target, updated_by)
        return result["value"]

    def __repr__(self):
        return f"<ActiveBackend {self.store!r}>"

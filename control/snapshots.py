"""
Retained snapshot store.

A switch writes the dump it restored from to

    <dump_dir>/switch-<UTC stamp>-<source>-to-<target>.json

and keeps exactly that one file: it is what a later rollback restores.
Every switch and rollback also appends one JSON line to
``<dump_dir>/switch-audit.log``.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone

from adapters.util import now_iso

log = logging.getLogger(__name__)

PREFIX = "switch-"
SUFFIX = ".json"
AUDIT_LOG = "switch-audit.log"


class SnapshotStore:

    def __init__(self, directory):
        self.directory = os.path.expanduser(str(directory))

    def _ensure_dir(self):
        os.makedirs(self.directory, exist_ok=True)

    def save(self, tables: dict, source: str, target: str) -> str:
        """Write a snapshot atomically; return its path."""
        self._ensure_dir()
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = os.path.join(self.directory, f"{PREFIX}{stamp}-{source}-to-{target}{SUFFIX}")
        doc = {
            "created_at": now_iso(),
            "source": source,
            "target": target,
            "tables": tables,
        }
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".switch-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        log.info("snapshot saved: %s (%d tables)", path, len(tables))
        return path

    def load(self, path: str) -> dict:
        """Table map of a saved snapshot."""
        with open(path, encoding="utf-8") as f:
            return json.load(f)["tables"]

    def exists(self, path) -> bool:
        return bool(path) and os.path.isfile(path)

    def discard(self, path):
        if self.exists(path):
            os.unlink(path)
            log.info("snapshot discarded: %s", path)

    def list(self) -> list:
        if not os.path.isdir(self.directory):
            return []
        return sorted(
            os.path.join(self.directory, name)
            for name in os.listdir(self.directory)
            if name.startswith(PREFIX) and name.endswith(SUFFIX)
        )

    def prune(self, keep):
        """Remove every snapshot except ``keep``."""
        keep = os.path.abspath(keep) if keep else None
        for path in self.list():
            if os.path.abspath(path) != keep:
                os.unlink(path)
                log.debug("snapshot pruned: %s", path)

    def audit(self, event: dict):
        """Append one JSON line to the switch audit log."""
        self._ensure_dir()
        line = json.dumps({"at": now_iso(), **event}, default=str, sort_keys=True)
        with open(os.path.join(self.directory, AUDIT_LOG), "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def __repr__(self):
        return f"<SnapshotStore {self.directory}>"

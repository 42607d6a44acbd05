"""
Migration manager — ordered per-backend schema scripts.

Scripts live in adapters/migrations/<driver>/ and are named
``NNN_description.sql``; the filename is the migration id and sorting the
ids gives the apply order. A paired ``NNN_description.down.sql`` makes a
migration reversible:

    migrations/sqlite/001_init.sql
    migrations/sqlite/003_crash_events.sql
    migrations/sqlite/003_crash_events.down.sql

Usage:

    mm = MigrationManager(adapter)
    mm.status()          # → {"applied": [...], "pending": [...], "total": n}
    mm.apply()           # → {"applied": ["001_init.sql", ...], "total": n}
    mm.rollback_last()   # → {"rolled_back": "003_crash_events.sql"}

The manager only reads files and decides; the adapter runs the scripts
inside its own transaction.
"""

import logging
import os
import re
from collections import namedtuple

import adapters
from adapters.errors import MissingDownMigration, NothingToRollBack

log = logging.getLogger(__name__)

MIGRATIONS_ROOT = os.path.join(os.path.dirname(os.path.abspath(adapters.__file__)), "migrations")

MIGRATION_RE = re.compile(r"^\d+_.+\.sql$")
DOWN_SUFFIX = ".down.sql"

Migration = namedtuple("Migration", "id sql")


def down_name(migration_id: str) -> str:
    """001_init.sql → 001_init.down.sql"""
    return migration_id[: -len(".sql")] + DOWN_SUFFIX


class MigrationManager:

    def __init__(self, adapter, directory=None):
        self.adapter = adapter
        self.directory = directory or os.path.join(MIGRATIONS_ROOT, adapter.driver)

    def available(self) -> list:
        """Forward migration ids found on disk, in apply order."""
        if not os.path.isdir(self.directory):
            return []
        return sorted(
            name for name in os.listdir(self.directory)
            if MIGRATION_RE.match(name) and not name.endswith(DOWN_SUFFIX)
        )

    def load(self) -> list:
        migrations = []
        for name in self.available():
            with open(os.path.join(self.directory, name), encoding="utf-8") as f:
                migrations.append(Migration(name, f.read()))
        return migrations

    def down_script(self, migration_id: str):
        path = os.path.join(self.directory, down_name(migration_id))
        if not os.path.exists(path):
            return None
        with open(path, encoding="utf-8") as f:
            return f.read()

    # ── Operations ────────────────────────────────────────────

    def apply(self) -> dict:
        """Apply every pending migration as one batch."""
        migrations = self.load()
        applied = self.adapter.run_migrations(migrations)
        if not applied:
            log.debug("%s: no pending migrations", self.adapter.kind)
        return {"applied": applied, "total": len(migrations)}

    def status(self) -> dict:
        """Applied and pending ids. Reads only."""
        applied = self.adapter.get_applied_migrations()
        done = {r["id"] for r in applied}
        available = self.available()
        return {
            "applied": applied,
            "pending": [m for m in available if m not in done],
            "total": len(available),
        }

    def rollback_last(self) -> dict:
        """Undo the most recently applied migration using its down script."""
        applied = self.adapter.get_applied_migrations()
        if not applied:
            raise NothingToRollBack("No applied migrations to roll back")
        last = max(r["id"] for r in applied)
        down_sql = self.down_script(last)
        if down_sql is None:
            log.warning("%s: %s has no down migration", self.adapter.kind, last)
            raise MissingDownMigration(
                f"Missing down migration for {last} (expected {down_name(last)})",
                details={"id": last},
            )
        self.adapter.rollback_migration(last, down_sql)
        return {"rolled_back": last}

    def __repr__(self):
        return f"<MigrationManager {self.adapter.kind} {self.directory}>"

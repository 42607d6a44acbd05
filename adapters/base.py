"""
Storage contract — the one interface both backends implement.

Every adapter exposes the same surface:

    init() / ping() / close()                  lifecycle
    run_migrations / get_applied_migrations /
      rollback_migration                       schema primitives
    dump_all / restore_all / counts /
      reset / clear_all                        whole-database primitives
    settings, leaderboard, packs, users, ...   domain CRUD (query mixins)

Subclasses supply the plumbing: how to open a transaction, how to fetch
the id of a fresh row, which tables exist, how to resync identity
counters, and how to run a multi-statement script. All domain SQL is
written once, with ``?`` placeholders, and lives in the mixins.

Plumbing is per backend. Queries are shared.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager

from .accounts import AccountQueries
from .content import ContentQueries
from .errors import MigrationError, NotFoundError, StoreError, ValidationError
from .tables import BY_NAME, RESET_SCOPES, TABLES
from .telemetry import TelemetryQueries
from .util import now_iso

log = logging.getLogger(__name__)

SCHEMA_MIGRATIONS_DDL = (
    "CREATE TABLE IF NOT EXISTS schema_migrations ("
    "id TEXT PRIMARY KEY, applied_at TEXT NOT NULL)"
)


class StorageAdapter(ContentQueries, AccountQueries, TelemetryQueries, ABC):
    """
    Base for the embedded and networked adapters.

    Subclasses must implement:
      init / close / ping     — lifecycle
      _transaction            — context manager yielding a DB-API cursor
      _insert_id              — run an INSERT, return the new id
      _existing_tables        — names of tables present in the schema
      _resync_sequences       — set identity counters to max(id)
      _run_script             — execute a multi-statement SQL script
    """

    driver = None   # "sqlite" | "postgres" — selects the migration directory
    kind = None     # "embedded" | "networked" — the name callers switch between

    def __init__(self, gate=None):
        self.gate = gate

    # ── Required ──────────────────────────────────────────────

    @abstractmethod
    def init(self):
        """Open connections and make sure schema_migrations exists."""
        ...

    @abstractmethod
    def close(self):
        ...

    @abstractmethod
    def ping(self) -> bool:
        """
        Round-trip to the backend. Returns True.

        Raises StorageUnavailable when the backend cannot be reached —
        never returns False.
        """
        ...

    @abstractmethod
    def _transaction(self, readonly: bool):
        """
        Context manager: one transaction on one connection.

        Yields a cursor whose rows convert with dict(row). Commits on a
        clean exit, rolls back and re-raises on any exception.
        """
        ...

    @abstractmethod
    def _insert_id(self, cur, sql: str, params) -> int:
        ...

    @abstractmethod
    def _existing_tables(self, cur) -> set:
        ...

    @abstractmethod
    def _resync_sequences(self, cur, tables):
        ...

    @abstractmethod
    def _run_script(self, cur, script: str):
        ...

    # ── Dialect helpers ───────────────────────────────────────
    # Override in subclasses where SQL syntax diverges.

    def _sql(self, sql: str) -> str:
        """Rewrite ``?`` placeholders into the driver's paramstyle."""
        return sql

    def _lock_pack_type(self, cur, pack_type: str):
        """Serialize activations of one pack type. No-op where the engine
        already serializes writers."""

    def upsert(self, table: str, conflict: tuple, cols: tuple, keep: tuple = (),
               insert_only: tuple = ()) -> str:
        """
        INSERT ... ON CONFLICT (...) DO UPDATE statement.

        Both engines speak this dialect (SQLite 3.24+, PostgreSQL 9.5+).
        Columns listed in ``keep`` preserve the stored value when the new
        one is NULL; ``insert_only`` columns are never overwritten.
        """
        col_list = ", ".join(cols)
        placeholders = ", ".join("?" for _ in cols)
        updates = []
        for c in cols:
            if c in conflict or c in insert_only:
                continue
            if c in keep:
                updates.append(f"{c} = COALESCE(excluded.{c}, {table}.{c})")
            else:
                updates.append(f"{c} = excluded.{c}")
        return (
            f"INSERT INTO {table} ({col_list}) VALUES ({placeholders}) "
            f"ON CONFLICT ({', '.join(conflict)}) DO UPDATE SET {', '.join(updates)}"
        )

    # ── Execution helpers ─────────────────────────────────────

    @contextmanager
    def transaction(self, readonly: bool = False):
        """
        Open a transaction.

        A write transaction stays registered with the maintenance gate from
        before BEGIN until after COMMIT or ROLLBACK.
        """
        if readonly or self.gate is None:
            with self._transaction(readonly) as cur:
                yield cur
            return
        with self.gate.writer():
            with self._transaction(readonly) as cur:
                yield cur

    def _exec(self, cur, sql, params=()):
        cur.execute(self._sql(sql), tuple(params))
        return cur

    @staticmethod
    def _rows(cur) -> list:
        return [dict(r) for r in cur.fetchall()]

    @staticmethod
    def _one(cur):
        row = cur.fetchone()
        return dict(row) if row is not None else None

    def fetch_all(self, sql, params=()) -> list:
        with self.transaction(readonly=True) as cur:
            return self._rows(self._exec(cur, sql, params))

    def fetch_one(self, sql, params=()):
        with self.transaction(readonly=True) as cur:
            return self._one(self._exec(cur, sql, params))

    def execute(self, sql, params=()) -> int:
        """Run one write statement, return the affected row count."""
        with self.transaction() as cur:
            return self._exec(cur, sql, params).rowcount

    def insert(self, sql, params=()) -> int:
        with self.transaction() as cur:
            return self._insert_id(cur, sql, params)

    # ── Migration primitives ──────────────────────────────────

    def _ensure_migrations_table(self):
        with self.transaction() as cur:
            self._exec(cur, SCHEMA_MIGRATIONS_DDL)

    def get_applied_migrations(self) -> list:
        """Applied migrations as [{id, applied_at}] ordered by id."""
        return self.fetch_all("SELECT id, applied_at FROM schema_migrations ORDER BY id ASC")

    def run_migrations(self, migrations) -> list:
        """
        Apply every migration not yet recorded, in the given order.

        All pending scripts and their tracking rows commit together — if
        one fails, none of the batch is visible. Returns the ids applied
        by this call; an empty list means nothing was written.
        """
        recorded = {r["id"] for r in self.get_applied_migrations()}
        if not [m for m in migrations if m.id not in recorded]:
            return []

        applied = []
        with self.transaction() as cur:
            recorded = {r["id"] for r in self._rows(self._exec(cur, "SELECT id FROM schema_migrations"))}
            for m in migrations:
                if m.id in recorded:
                    continue
                try:
                    self._run_script(cur, m.sql)
                except Exception as exc:
                    raise MigrationError(
                        f"Migration {m.id} failed: {exc}", details={"id": m.id}
                    ) from exc
                self._exec(
                    cur,
                    "INSERT INTO schema_migrations (id, applied_at) VALUES (?, ?)",
                    (m.id, now_iso()),
                )
                applied.append(m.id)
        log.info("%s: applied %d migration(s): %s", self.kind, len(applied), ", ".join(applied))
        return applied

    def rollback_migration(self, migration_id: str, down_sql: str):
        """Run ``down_sql`` and forget ``migration_id``, in one transaction."""
        with self.transaction() as cur:
            found = self._one(self._exec(
                cur, "SELECT id FROM schema_migrations WHERE id = ?", (migration_id,)
            ))
            if found is None:
                raise NotFoundError(f"Migration {migration_id} is not applied")
            try:
                self._run_script(cur, down_sql)
            except Exception as exc:
                raise MigrationError(
                    f"Rollback of {migration_id} failed: {exc}", details={"id": migration_id}
                ) from exc
            self._exec(cur, "DELETE FROM schema_migrations WHERE id = ?", (migration_id,))
        log.info("%s: rolled back migration %s", self.kind, migration_id)

    # ── Whole-database primitives ─────────────────────────────

    def dump_all(self) -> dict:
        """
        Snapshot every table as {table: [row, ...]} in TABLES order.

        Read inside one read-only transaction so the snapshot is consistent
        across tables.
        """
        snapshot = {}
        with self.transaction(readonly=True) as cur:
            existing = self._existing_tables(cur)
            for t in TABLES:
                if t.name not in existing:
                    continue
                sql = f"SELECT {', '.join(t.columns)} FROM {t.name} ORDER BY {t.order_by} ASC"
                snapshot[t.name] = self._rows(self._exec(cur, sql))
        return snapshot

    def restore_all(self, snapshot: dict):
        """
        Replace the whole database with ``snapshot``.

        Clears children-first, inserts parents-first and resyncs identity
        counters, all in one transaction. Readers never see a half-restored
        database.
        """
        unknown = sorted(set(snapshot) - set(BY_NAME))
        if unknown:
            raise ValidationError(f"Snapshot has unknown tables: {', '.join(unknown)}")

        with self.transaction() as cur:
            existing = self._existing_tables(cur)
            missing = [name for name, rows in snapshot.items() if rows and name not in existing]
            if missing:
                raise StoreError(
                    f"Target schema lacks tables: {', '.join(missing)}",
                    details={"missing": missing},
                )

            for t in reversed(TABLES):
                if t.name in existing:
                    self._exec(cur, f"DELETE FROM {t.name}")

            for t in TABLES:
                rows = snapshot.get(t.name) or []
                if not rows or t.name not in existing:
                    continue
                cols = [c for c in t.columns if any(c in row for row in rows)]
                sql = self._sql(
                    f"INSERT INTO {t.name} ({', '.join(cols)}) "
                    f"VALUES ({', '.join('?' for _ in cols)})"
                )
                cur.executemany(sql, [tuple(row.get(c) for c in cols) for row in rows])

            self._resync_sequences(cur, [t.name for t in TABLES if t.serial and t.name in existing])
        log.info("%s: restored %d table(s)", self.kind, len(snapshot))

    def counts(self) -> dict:
        """Row count per existing table, in TABLES order."""
        out = {}
        with self.transaction(readonly=True) as cur:
            existing = self._existing_tables(cur)
            for t in TABLES:
                if t.name in existing:
                    row = self._one(self._exec(cur, f"SELECT COUNT(*) AS c FROM {t.name}"))
                    out[t.name] = int(row["c"])
        return out

    def reset(self, scope: str):
        """Empty the tables of one reset scope: all | leaderboard | results | vocab."""
        if scope not in RESET_SCOPES:
            raise ValidationError(
                f"Unknown reset scope '{scope}'. Supported: {', '.join(RESET_SCOPES)}"
            )
        tables = RESET_SCOPES[scope]
        with self.transaction() as cur:
            for name in tables:
                self._exec(cur, f"DELETE FROM {name}")
            self._resync_sequences(cur, [n for n in tables if BY_NAME[n].serial])
        log.info("%s: reset %s", self.kind, scope)

    def clear_all(self):
        """Empty every table. Schema and schema_migrations are kept."""
        self.restore_all({})

    def __repr__(self):
        return f"<{self.__class__.__name__}>"

"""
SQLite adapter — the embedded backend.

Python stdlib only. The database is a single file path; its directory is
created on init().

One connection per adapter, shared across threads and serialized by a
re-entrant lock. The connection runs in autocommit mode and every
transaction is explicit:

    write      BEGIN IMMEDIATE   (takes the write lock up front)
    readonly   BEGIN             (consistent snapshot across statements)

Pragmas: WAL journal, busy_timeout so a reader never starves a writer,
foreign keys ON, synchronous NORMAL.
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager

from .base import StorageAdapter
from .errors import StorageUnavailable

log = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


def split_statements(script: str) -> list:
    """
    Split a SQL script into complete statements.

    Cursor.executescript() commits any open transaction first, so scripts
    that must run inside one are fed statement by statement instead.
    """
    statements, buf = [], ""
    for line in script.splitlines(keepends=True):
        buf += line
        if sqlite3.complete_statement(buf):
            stmt = buf.strip()
            if stmt and stmt != ";":
                statements.append(stmt)
            buf = ""
    if buf.strip() and not buf.strip().startswith("--"):
        statements.append(buf.strip())
    return statements


class SQLiteAdapter(StorageAdapter):
    """Embedded backend over the sqlite3 module."""

    driver = "sqlite"
    kind = "embedded"

    def __init__(self, *, sqlite_path, busy_timeout_ms=BUSY_TIMEOUT_MS, gate=None):
        super().__init__(gate=gate)
        if not sqlite_path:
            raise ValueError("SQLiteAdapter requires 'sqlite_path'")
        self.sqlite_path = os.path.expanduser(str(sqlite_path))
        self.busy_timeout_ms = busy_timeout_ms
        self._conn = None
        self._lock = threading.RLock()
        self._depth = 0

    # ── Lifecycle ─────────────────────────────────────────────

    def init(self):
        if self._conn is not None:
            return self
        try:
            parent = os.path.dirname(os.path.abspath(self.sqlite_path))
            os.makedirs(parent, exist_ok=True)
            conn = sqlite3.connect(
                self.sqlite_path,
                timeout=self.busy_timeout_ms / 1000,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA synchronous = NORMAL")
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailable(f"Cannot open SQLite database {self.sqlite_path}: {exc}") from exc
        self._conn = conn
        self._ensure_migrations_table()
        log.info("sqlite adapter open: %s", self.sqlite_path)
        return self

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                log.info("sqlite adapter closed: %s", self.sqlite_path)

    def ping(self):
        try:
            with self._lock:
                if self._conn is None:
                    raise StorageUnavailable(f"SQLite database {self.sqlite_path} is not open")
                row = self._conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"SQLite ping failed: {exc}") from exc
        return row[0] == 1

    # ── Plumbing ──────────────────────────────────────────────

    @contextmanager
    def _transaction(self, readonly):
        with self._lock:
            if self._conn is None:
                raise StorageUnavailable(f"SQLite database {self.sqlite_path} is not open")
            cur = self._conn.cursor()
            # nested use on the owning thread joins the outer transaction
            if self._depth:
                self._depth += 1
                try:
                    yield cur
                finally:
                    self._depth -= 1
                    cur.close()
                return
            cur.execute("BEGIN" if readonly else "BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield cur
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()
            finally:
                self._depth = 0
                cur.close()

    def _insert_id(self, cur, sql, params):
        return self._exec(cur, sql, params).lastrowid

    def _existing_tables(self, cur):
        rows = cur.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        return {r["name"] for r in rows}

    def _resync_sequences(self, cur, tables):
        # AUTOINCREMENT keeps its high-water mark in sqlite_sequence
        for name in tables:
            cur.execute("DELETE FROM sqlite_sequence WHERE name = ?", (name,))
            cur.execute(
                f"INSERT INTO sqlite_sequence (name, seq) SELECT ?, COALESCE(MAX(id), 0) FROM {name}",
                (name,),
            )

    def _run_script(self, cur, script):
        for stmt in split_statements(script):
            cur.execute(stmt)

    def __repr__(self):
        return f"<SQLiteAdapter {self.sqlite_path}>"

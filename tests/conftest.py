"""
Shared fixtures.

Every contract test runs against the embedded adapter. The networked
variant runs too when KTRAIN_TEST_POSTGRES_URL names a disposable
PostgreSQL database; its public schema is dropped before every test.
"""

import os

import psycopg2
import pytest

from adapters import MaintenanceGate, PostgresAdapter, SQLiteAdapter
from control.migrations import MigrationManager

PG_URL = os.environ.get("KTRAIN_TEST_POSTGRES_URL")

requires_postgres = pytest.mark.skipif(not PG_URL, reason="KTRAIN_TEST_POSTGRES_URL not set")


def wipe_postgres(url=PG_URL):
    conn = psycopg2.connect(url)
    try:
        conn.autocommit = True
        with conn.cursor() as cur:
            cur.execute("DROP SCHEMA IF EXISTS public CASCADE")
            cur.execute("CREATE SCHEMA public")
    finally:
        conn.close()


def make_adapter(kind, tmp_path, gate=None, name="ktrain.sqlite"):
    """An opened, unmigrated adapter of ``kind``."""
    if kind == "networked":
        return PostgresAdapter(connection_string=PG_URL, pool_max=8, gate=gate).init()
    return SQLiteAdapter(sqlite_path=str(tmp_path / name), gate=gate).init()


BACKENDS = [
    "embedded",
    pytest.param("networked", marks=requires_postgres),
]


@pytest.fixture
def gate():
    return MaintenanceGate()


@pytest.fixture(params=BACKENDS)
def bare_adapter(request, tmp_path, gate):
    if request.param == "networked":
        wipe_postgres()
    adapter = make_adapter(request.param, tmp_path, gate)
    yield adapter
    adapter.close()


@pytest.fixture
def adapter(bare_adapter):
    """A fully migrated adapter of each available backend."""
    MigrationManager(bare_adapter).apply()
    return bare_adapter


@pytest.fixture
def sqlite_adapter(tmp_path, gate):
    adapter = SQLiteAdapter(sqlite_path=str(tmp_path / "embedded.sqlite"), gate=gate).init()
    MigrationManager(adapter).apply()
    yield adapter
    adapter.close()


def leaderboard_entry(**overrides):
    entry = {
        "player_name": "ada",
        "contest_type": "time",
        "level": 2,
        "content_mode": "words",
        "duration": 60,
        "score": 420.0,
        "accuracy": 97.5,
        "cpm": 310.0,
        "mistakes": 3,
        "tasks_completed": 12,
        "time_seconds": 60.0,
        "max_streak": 40,
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def make_entry():
    return leaderboard_entry


@pytest.fixture
def backend_pair(tmp_path, gate):
    """
    {"embedded": ..., "networked": ...} sharing one gate.

    Two SQLite files stand in for the pair unless a PostgreSQL URL is set.
    """
    embedded = SQLiteAdapter(sqlite_path=str(tmp_path / "embedded.sqlite"), gate=gate).init()
    if PG_URL:
        wipe_postgres()
        networked = PostgresAdapter(connection_string=PG_URL, pool_max=8, gate=gate).init()
    else:
        networked = SQLiteAdapter(sqlite_path=str(tmp_path / "networked.sqlite"), gate=gate).init()
    pair = {"embedded": embedded, "networked": networked}
    yield pair
    for a in pair.values():
        a.close()

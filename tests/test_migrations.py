"""Migration manager against every backend, with throwaway script directories."""

import os

import pytest

from adapters import MigrationError, MissingDownMigration, NotFoundError, NothingToRollBack
from control.migrations import MIGRATIONS_ROOT, MigrationManager


def _write(directory, files):
    directory.mkdir(parents=True, exist_ok=True)
    for name, sql in files.items():
        (directory / name).write_text(sql)
    return directory


@pytest.fixture
def scripts(tmp_path):
    return _write(tmp_path / "scripts", {
        "001_init.sql": "CREATE TABLE widgets (id INTEGER PRIMARY KEY, name TEXT NOT NULL);",
        "002_add_column.sql": "ALTER TABLE widgets ADD COLUMN color TEXT;",
        "002_add_column.down.sql": "ALTER TABLE widgets DROP COLUMN color;",
        "README.md": "not a migration",
    })


def _table_exists(adapter, name):
    with adapter.transaction(readonly=True) as cur:
        return name in adapter._existing_tables(cur)


class TestStatusAndApply:

    def test_pending_then_applied(self, bare_adapter, scripts):
        mm = MigrationManager(bare_adapter, str(scripts))

        before = mm.status()
        assert before["pending"] == ["001_init.sql", "002_add_column.sql"]
        assert before["applied"] == []

        result = mm.apply()
        assert result["applied"] == ["001_init.sql", "002_add_column.sql"]

        after = mm.status()
        assert after["pending"] == []
        assert [r["id"] for r in after["applied"]] == ["001_init.sql", "002_add_column.sql"]
        assert all(r["applied_at"] for r in after["applied"])

    def test_apply_twice_is_a_no_op(self, bare_adapter, scripts):
        mm = MigrationManager(bare_adapter, str(scripts))
        mm.apply()
        stamps = mm.status()["applied"]

        assert mm.apply()["applied"] == []
        assert mm.status()["applied"] == stamps

    def test_only_new_scripts_are_applied(self, bare_adapter, scripts):
        mm = MigrationManager(bare_adapter, str(scripts))
        mm.apply()
        (scripts / "003_gadgets.sql").write_text("CREATE TABLE gadgets (id INTEGER PRIMARY KEY);")
        assert mm.apply()["applied"] == ["003_gadgets.sql"]

    def test_failed_batch_leaves_nothing_behind(self, bare_adapter, tmp_path):
        scripts = _write(tmp_path / "broken", {
            "001_ok.sql": "CREATE TABLE first_table (id INTEGER PRIMARY KEY);",
            "002_broken.sql": "CREATE TABLE second_table (id INTEGER PRIMARY KEY;",
        })
        mm = MigrationManager(bare_adapter, str(scripts))

        with pytest.raises(MigrationError) as exc_info:
            mm.apply()

        assert exc_info.value.details == {"id": "002_broken.sql"}
        assert mm.status()["applied"] == []
        assert not _table_exists(bare_adapter, "first_table")

    def test_status_has_no_side_effects(self, bare_adapter, scripts):
        mm = MigrationManager(bare_adapter, str(scripts))
        mm.status()
        mm.status()
        assert not _table_exists(bare_adapter, "widgets")


class TestRollback:

    def test_rollback_last(self, bare_adapter, scripts):
        mm = MigrationManager(bare_adapter, str(scripts))
        mm.apply()

        assert mm.rollback_last() == {"rolled_back": "002_add_column.sql"}
        assert mm.status()["pending"] == ["002_add_column.sql"]
        assert mm.apply()["applied"] == ["002_add_column.sql"]

    def test_missing_down_script_fails_explicitly(self, bare_adapter, scripts):
        mm = MigrationManager(bare_adapter, str(scripts))
        mm.apply()
        mm.rollback_last()

        with pytest.raises(MissingDownMigration):
            mm.rollback_last()
        assert [r["id"] for r in mm.status()["applied"]] == ["001_init.sql"]
        assert _table_exists(bare_adapter, "widgets")

    def test_nothing_to_roll_back(self, bare_adapter, scripts):
        with pytest.raises(NothingToRollBack):
            MigrationManager(bare_adapter, str(scripts)).rollback_last()

    def test_rollback_of_unapplied_id(self, bare_adapter):
        with pytest.raises(NotFoundError):
            bare_adapter.rollback_migration("999_never.sql", "SELECT 1;")


class TestShippedMigrations:

    def test_both_engines_ship_the_same_ids(self):
        sqlite = MigrationManager(None, os.path.join(MIGRATIONS_ROOT, "sqlite"))
        postgres = MigrationManager(None, os.path.join(MIGRATIONS_ROOT, "postgres"))
        assert sqlite.available() == postgres.available()
        assert sqlite.available()[0] == "001_init.sql"

    def test_shipped_schema_round_trips_last_migration(self, bare_adapter):
        mm = MigrationManager(bare_adapter)
        applied = mm.apply()["applied"]
        assert applied == mm.available()

        last = applied[-1]
        mm.rollback_last()
        assert mm.status()["pending"] == [last]
        assert mm.apply()["applied"] == [last]

"""ktrain-db command line, driven through click's CliRunner."""

import json

import pytest
from click.testing import CliRunner

from control.cli import cli
from control.settings import _ENV


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    for var in list(_ENV) + ["KTRAIN_CONFIG"]:
        monkeypatch.delenv(var, raising=False)
    path = tmp_path / "ktrain.json"
    path.write_text(json.dumps({
        "backend": "embedded",
        "sqlite": {"sqlite_path": str(tmp_path / "data" / "ktrain.sqlite")},
        "dump_dir": str(tmp_path / "dumps"),
    }))
    return str(path)


@pytest.fixture
def raw_run(config_path):
    runner = CliRunner()

    def invoke(*args, role="OWNER"):
        return runner.invoke(cli, ["--config", config_path, "--role", role, *args])
    return invoke


@pytest.fixture
def run(raw_run):
    """Invoker over a fully migrated embedded backend."""
    assert raw_run("migrate", "up").exit_code == 0
    return raw_run


def _json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestMigrate:

    def test_nothing_is_applied_until_asked(self, raw_run):
        status = _json(raw_run("migrate", "status"))
        assert status["applied"] == []
        assert status["pending"][0] == "001_init.sql"

        applied = _json(raw_run("migrate", "up"))["applied"]
        assert applied == status["pending"]
        assert _json(raw_run("migrate", "status"))["pending"] == []

    def test_up_is_idempotent(self, run):
        assert _json(run("migrate", "up"))["applied"] == []

    def test_rollback_then_up(self, run):
        rolled = _json(run("migrate", "rollback"))["rolled_back"]
        assert _json(run("migrate", "status"))["pending"] == [rolled]
        assert _json(run("migrate", "up"))["applied"] == [rolled]

    def test_rollback_needs_db_config_permission(self, run):
        result = run("migrate", "rollback", role="MODERATOR")
        assert result.exit_code == 1
        assert "FORBIDDEN" in result.output


class TestData:

    def test_counts_and_reset(self, run):
        counts = _json(run("counts"))
        assert counts["leaderboard"] == 0
        assert _json(run("reset", "leaderboard")) == {"ok": True, "scope": "leaderboard", "backend": "embedded"}

    def test_reset_unknown_scope(self, run):
        assert run("reset", "everything").exit_code == 2

    def test_reset_as_user_is_denied(self, run):
        result = run("reset", "all", role="USER")
        assert result.exit_code == 1
        assert "admin:reset" in result.output

    def test_status(self, run):
        status = _json(run("status"))
        assert status["active"] == "embedded"
        assert status["configured"] == ["embedded"]
        assert status["maintenance"] is False
        assert status["rollback_available"] is False
        assert status["migrations"]["pending"] == []


class TestSwitching:

    def test_switch_to_unconfigured_backend(self, run):
        result = run("switch", "networked")
        assert result.exit_code == 1
        assert "BAD_REQUEST" in result.output

    def test_switch_to_active_backend(self, run):
        assert _json(run("switch", "embedded"))["changed"] is False

    def test_rollback_without_snapshot(self, run):
        result = run("rollback")
        assert result.exit_code == 1
        assert json.loads(result.stdout) == {"ok": False, "reason": "No rollback snapshot available"}


class TestConfig:

    def test_set_and_get(self, run):
        result = _json(run("config", "set", "theme.defaults", '{"accent": "red"}'))
        assert result["value"] == {"accent": "red"}
        assert result["version"] == 2
        assert _json(run("config", "get", "theme.defaults"))["value"] == {"accent": "red"}

    def test_set_rejects_unknown_key(self, run):
        result = run("config", "set", "not.a.real.key", "{}")
        assert result.exit_code == 1
        assert "BAD_REQUEST" in result.output

    def test_set_rejects_bad_json(self, run):
        result = run("config", "set", "theme.defaults", "{nope")
        assert result.exit_code == 1
        assert "not valid JSON" in result.output

    def test_set_as_moderator_is_denied(self, run):
        result = run("config", "set", "theme.defaults", "{}", role="MODERATOR")
        assert result.exit_code == 1
        assert "FORBIDDEN" in result.output

    def test_export_then_import(self, run, tmp_path):
        _json(run("config", "set", "contest.rules", '{"rounds": 3}'))
        exported = _json(run("config", "export"))
        assert [r["key"] for r in exported] == ["contest.rules"]

        dump = tmp_path / "config.json"
        dump.write_text(json.dumps(exported))
        assert _json(run("config", "import", str(dump)))["imported"] == 1

"""
Conformance suite: the same behaviour from every adapter.

Runs once per backend through the parametrized ``adapter`` fixture.
"""

import random
import threading

import pytest

from adapters import MaintenanceMode, NotFoundError, StorageUnavailable, ValidationError
from adapters.tables import TABLES
from adapters.util import iso_ago, iso_in


def _run_threads(n, target):
    errors = []

    def runner(i):
        try:
            target(i)
        except Exception as exc:  # collected and asserted below
            errors.append(exc)

    threads = [threading.Thread(target=runner, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:

    def test_ping(self, adapter):
        assert adapter.ping() is True

    def test_ping_after_close_is_infrastructure_error(self, adapter):
        adapter.close()
        with pytest.raises(StorageUnavailable) as exc_info:
            adapter.ping()
        assert exc_info.value.status == 503

    def test_kind_and_driver(self, adapter):
        assert (adapter.kind, adapter.driver) in {("embedded", "sqlite"), ("networked", "postgres")}


# =============================================================================
# Settings and leaderboard
# =============================================================================


class TestSettingsAndLeaderboard:

    def test_setting_upsert_keeps_latest(self, adapter):
        assert adapter.get_setting("language") is None
        adapter.set_setting("language", "en")
        adapter.set_setting("language", "de")
        assert adapter.get_setting("language") == "de"

    def test_leaderboard_filter_scenario(self, adapter, make_entry):
        row_id = adapter.insert_leaderboard(make_entry(contest_type="time", level=2, duration=60))

        rows = adapter.query_leaderboard({"contestType": "time", "level": 2, "duration": 60})
        assert [r["id"] for r in rows] == [row_id]
        assert rows[0]["player_name"] == "ada"

        assert adapter.query_leaderboard({"contestType": "time", "level": 3, "duration": 60}) == []

    def test_duration_only_filters_timed_contests(self, adapter, make_entry):
        adapter.insert_leaderboard(make_entry(contest_type="tasks", duration=None, task_target=20))
        rows = adapter.query_leaderboard({"contestType": "tasks", "duration": 60})
        assert len(rows) == 1
        assert adapter.query_leaderboard({"contestType": "tasks", "taskTarget": 30}) == []

    def test_only_authorized_and_language(self, adapter, make_entry):
        adapter.insert_leaderboard(make_entry(player_name="guest"))
        adapter.insert_leaderboard(make_entry(player_name="member", is_guest=False, language="de"))
        rows = adapter.query_leaderboard({"onlyAuthorized": True})
        assert [r["player_name"] for r in rows] == ["member"]
        assert [r["player_name"] for r in adapter.query_leaderboard({"language": "de"})] == ["member"]

    def test_ordering_score_then_accuracy(self, adapter, make_entry):
        adapter.insert_leaderboard(make_entry(player_name="b", score=100.0, accuracy=90.0))
        adapter.insert_leaderboard(make_entry(player_name="a", score=100.0, accuracy=99.0))
        adapter.insert_leaderboard(make_entry(player_name="c", score=200.0, accuracy=50.0))
        names = [r["player_name"] for r in adapter.query_leaderboard({})]
        assert names == ["c", "a", "b"]

    def test_missing_required_field_is_validation_error(self, adapter, make_entry):
        entry = make_entry()
        del entry["score"]
        with pytest.raises(ValidationError):
            adapter.insert_leaderboard(entry)
        assert adapter.counts()["leaderboard"] == 0

    def test_leaderboard_page(self, adapter, make_entry):
        for i in range(12):
            adapter.insert_leaderboard(make_entry(player_name=f"p{i}", score=float(i)))
        page = adapter.query_leaderboard_page({}, sort_by="score", sort_dir="asc", page=2, page_size=5)
        assert page["total"] == 12
        assert page["page_size"] == 5
        assert [r["player_name"] for r in page["rows"]] == ["p5", "p6", "p7", "p8", "p9"]

    def test_leaderboard_page_clamps_size(self, adapter):
        assert adapter.query_leaderboard_page({}, page_size=1000)["page_size"] == 100
        assert adapter.query_leaderboard_page({}, page_size=1)["page_size"] == 5


# =============================================================================
# Vocab packs
# =============================================================================


class TestVocabPacks:

    def test_items_round_trip(self, adapter):
        pack_id = adapter.insert_pack("basics", "words", ["cat", "dog"])
        assert adapter.get_pack(pack_id)["items"] == ["cat", "dog"]
        adapter.update_pack(pack_id, items=["emu"])
        assert adapter.get_pack(pack_id)["items"] == ["emu"]
        assert adapter.get_pack(pack_id)["name"] == "basics"

    def test_insert_active_deactivates_siblings(self, adapter):
        first = adapter.insert_pack("one", "words", ["a"], active=True)
        second = adapter.insert_pack("two", "words", ["b"], active=True)
        other = adapter.insert_pack("three", "sentences", ["c"], active=True)
        assert adapter.get_active_pack("words")["id"] == second
        assert adapter.get_pack(first)["active"] == 0
        assert adapter.get_active_pack("sentences")["id"] == other

    def test_activate_unknown_pack_keeps_previous_active(self, adapter):
        active = adapter.insert_pack("one", "words", ["a"], active=True)
        sentence = adapter.insert_pack("s", "sentences", ["b"])
        with pytest.raises(NotFoundError):
            adapter.activate_pack(sentence, "words")
        assert adapter.get_active_pack("words")["id"] == active

    def test_concurrent_activation_leaves_exactly_one_active(self, adapter):
        ids = [adapter.insert_pack(f"pack{i}", "words", [str(i)]) for i in range(4)]
        rng = random.Random(7)
        choices = [rng.choice(ids) for _ in range(6)]

        errors = _run_threads(6, lambda i: adapter.activate_pack(choices[i], "words"))

        assert errors == []
        active = [p for p in adapter.list_packs() if p["pack_type"] == "words" and p["active"] == 1]
        assert len(active) == 1

    def test_delete_pack(self, adapter):
        pack_id = adapter.insert_pack("gone", "words", [])
        adapter.delete_pack(pack_id)
        assert adapter.get_pack(pack_id) is None


# =============================================================================
# Language packs
# =============================================================================


class TestLanguagePacks:

    def test_only_published_items_are_served(self, adapter):
        draft = adapter.create_language_pack("de", "words", topic="animals")
        adapter.replace_language_pack_items(draft, [
            {"text": "Hund", "difficulty": 1},
            {"text": "Katze", "difficulty": 2, "metadata_json": {"gender": "f"}},
        ])
        assert adapter.get_published_pack_items("de", "words") == []
        assert adapter.list_published_languages("words") == []

        adapter.publish_language_pack(draft)
        items = adapter.get_published_pack_items("de", "words")
        assert [i["text"] for i in items] == ["Hund", "Katze"]
        assert items[1]["metadata_json"] == {"gender": "f"}
        assert adapter.list_published_languages("words") == ["de"]

        adapter.archive_language_pack(draft)
        assert adapter.get_published_pack_items("de", "words") == []

    def test_replace_items_swaps_whole_list(self, adapter):
        pack = adapter.create_language_pack("en", "sentences")
        adapter.replace_language_pack_items(pack, [{"text": "one"}, {"text": "two"}])
        adapter.replace_language_pack_items(pack, [{"text": "three"}])
        items = adapter.get_language_pack_items(pack)
        assert [(i["position"], i["text"]) for i in items] == [(0, "three")]

    def test_replace_items_of_unknown_pack(self, adapter):
        with pytest.raises(NotFoundError):
            adapter.replace_language_pack_items(9999, [{"text": "x"}])

    def test_status_transitions(self, adapter):
        pack = adapter.create_language_pack("fr", "words")
        adapter.archive_language_pack(pack)
        with pytest.raises(ValidationError):
            adapter.publish_language_pack(pack)
        with pytest.raises(ValidationError):
            adapter.create_language_pack("fr", "words", status="LIVE")
        with pytest.raises(NotFoundError):
            adapter.publish_language_pack(424242)

    def test_list_language_packs_filters(self, adapter):
        adapter.create_language_pack("en", "words")
        de = adapter.create_language_pack("de", "words")
        adapter.publish_language_pack(de)
        assert [p["id"] for p in adapter.list_language_packs(language="de")] == [de]
        assert [p["id"] for p in adapter.list_language_packs(status="PUBLISHED")] == [de]
        assert len(adapter.list_language_packs(type="words")) == 2


# =============================================================================
# Users, identities, sessions, resets, secrets
# =============================================================================


class TestAccounts:

    def test_user_lookups(self, adapter):
        user = adapter.create_user("google:123", email="Ada@Example.org", display_name="Ada")
        assert user["role"] == "USER"
        assert adapter.find_user_by_email("ada@example.org")["id"] == user["id"]
        assert adapter.find_user_by_external_subject("google:123")["id"] == user["id"]
        assert adapter.find_user_by_display_name("  ada ")["id"] == user["id"]
        assert adapter.get_owner_user() is None

        adapter.update_user_role(user["id"], "OWNER")
        assert adapter.get_owner_user()["id"] == user["id"]
        updated = adapter.update_user_profile(user["id"], avatar_url="https://img/ada.png")
        assert updated["display_name"] == "Ada"
        assert updated["avatar_url"] == "https://img/ada.png"

    def test_auth_identity_upsert_keeps_password_hash(self, adapter):
        user = adapter.create_user("local:ada", email="ada@example.org")
        adapter.upsert_auth_identity(user["id"], "password", "ada@example.org", password_hash="h1")
        adapter.upsert_auth_identity(user["id"], "password", "ada@example.org", password_hash=None)
        identity = adapter.find_password_identity_by_email("ADA@example.org")
        assert identity["password_hash"] == "h1"
        assert adapter.find_auth_identity("password", "ada@example.org")["user_id"] == user["id"]

    def test_concurrent_config_upserts_never_conflict(self, adapter):
        errors = _run_threads(6, lambda i: adapter.set_config("app.settings", "global", "global", {"n": i}))
        assert errors == []
        assert adapter.get_config("app.settings")["value_json"]["n"] in range(6)
        assert adapter.counts()["app_config"] == 1

    def test_sessions(self, adapter):
        user = adapter.create_user("local:bob")
        adapter.create_auth_session(user["id"], "tok-live", iso_in(3600), user_agent="pytest")
        adapter.create_auth_session(user["id"], "tok-old", iso_ago(10))

        live = adapter.get_auth_session("tok-live")
        assert live["user_id"] == user["id"]
        assert live["external_subject"] == "local:bob"
        assert adapter.get_auth_session("tok-old") is None

        adapter.revoke_auth_session("tok-live")
        assert adapter.get_auth_session("tok-live") is None

        adapter.cleanup_auth_sessions()
        assert adapter.counts()["auth_sessions"] == 0

    def test_revoke_all_sessions_for_user(self, adapter):
        user = adapter.create_user("local:eve")
        for i in range(3):
            adapter.create_auth_session(user["id"], f"t{i}", iso_in(3600))
        adapter.revoke_auth_sessions_for_user(user["id"])
        assert all(adapter.get_auth_session(f"t{i}") is None for i in range(3))

    def test_password_reset_is_single_use(self, adapter):
        user = adapter.create_user("local:carl")
        adapter.create_password_reset(user["id"], "reset-1", iso_in(900))
        adapter.create_password_reset(user["id"], "reset-old", iso_ago(1))

        assert adapter.consume_password_reset("reset-1")["user_id"] == user["id"]
        assert adapter.consume_password_reset("reset-1") is None
        assert adapter.consume_password_reset("reset-old") is None
        assert adapter.consume_password_reset("nope") is None

    def test_secrets_are_stored_opaque(self, adapter):
        user = adapter.create_user("local:dora")
        blob = {"ciphertext": "c1", "iv": "i1", "auth_tag": "t1"}
        adapter.upsert_user_secret(user["id"], "openai", blob)
        adapter.upsert_user_secret(user["id"], "openai", {**blob, "ciphertext": "c2"})
        assert adapter.get_user_secret(user["id"], "openai")["ciphertext"] == "c2"

        adapter.set_system_secret("smtp.password", blob, updated_by="owner")
        assert adapter.get_system_secret("smtp.password")["updated_by"] == "owner"

    def test_preferences_and_stats_upsert(self, adapter):
        user = adapter.create_user("local:fay")
        adapter.upsert_game_preferences(user["id"], mode="contest", level=3)
        adapter.upsert_game_preferences(user["id"], mode="learning", level=4, language="de")
        prefs = adapter.get_game_preferences(user["id"])
        assert (prefs["mode"], prefs["level"], prefs["language"]) == ("learning", 4, "de")

        adapter.upsert_player_stats(user["id"], total_correct=10, sessions_count=1)
        adapter.upsert_player_stats(user["id"], total_correct=25, sessions_count=2, best_wpm=70)
        stats = adapter.get_player_stats(user["id"])
        assert (stats["total_correct"], stats["sessions_count"], stats["best_wpm"]) == (25, 2, 70)


# =============================================================================
# Telemetry
# =============================================================================


class TestTelemetry:

    def test_audit_log_newest_first(self, adapter):
        for i in range(5):
            adapter.insert_audit_log({"action": f"act{i}", "metadata": {"i": i}})
        rows = adapter.list_audit_logs(limit=2)
        assert [r["action"] for r in rows] == ["act4", "act3"]
        assert rows[0]["metadata"] == {"i": 4}

    def test_crash_events(self, adapter):
        first = adapter.insert_crash_event({"crash_type": "startup", "error_message": "boom",
                                            "metadata_json": {"phase": "db"}})
        adapter.insert_crash_event({"crash_type": "runtime"})
        assert len(adapter.list_crash_events()) == 2

        acked = adapter.acknowledge_crash_event(first, by="owner")
        assert acked["resolved"] == 1
        assert acked["acknowledged_by"] == "owner"
        assert acked["metadata_json"] == {"phase": "db"}
        assert [e["crash_type"] for e in adapter.list_crash_events(unresolved_only=True)] == ["runtime"]

    def test_active_session_stats(self, adapter):
        user = adapter.create_user("local:gus")
        adapter.upsert_active_session("s1", "learning")
        adapter.upsert_active_session("s2", "contest", user_id=user["id"], is_authorized=True)
        adapter.upsert_active_session("s3", "contest")
        adapter.upsert_active_session("s3", "contest")

        stats = adapter.get_active_session_stats()
        assert (stats["total"], stats["authorized"], stats["guests"]) == (3, 1, 2)
        assert stats["modes"] == [{"mode": "contest", "count": 2}, {"mode": "learning", "count": 1}]

        assert adapter.cleanup_active_sessions(max_age_seconds=3600) == 0
        assert adapter.cleanup_active_sessions(max_age_seconds=-60) == 3


# =============================================================================
# Whole-database primitives
# =============================================================================


def _populate(adapter, make_entry):
    user = adapter.create_user("google:1", email="a@example.org")
    adapter.upsert_game_preferences(user["id"])
    adapter.upsert_auth_identity(user["id"], "google", "1")
    adapter.create_auth_session(user["id"], "tok", iso_in(60))
    adapter.set_setting("theme", "dark")
    for i in range(3):
        adapter.insert_leaderboard(make_entry(player_name=f"p{i}", user_id=user["id"]))
    adapter.insert_pack("basics", "words", ["a", "b"], active=True)
    pack = adapter.create_language_pack("en", "words", created_by=user["id"])
    adapter.replace_language_pack_items(pack, [{"text": "x"}, {"text": "y"}])
    adapter.insert_audit_log({"action": "seed", "actor_user_id": user["id"]})
    adapter.insert_crash_event({"crash_type": "runtime"})
    adapter.upsert_active_session("s1", "learning", user_id=user["id"])
    adapter.set_config("app.features", "global", "global", {"x": True})


class TestWholeDatabase:

    def test_dump_covers_every_table(self, adapter, make_entry):
        _populate(adapter, make_entry)
        snapshot = adapter.dump_all()
        assert list(snapshot) == [t.name for t in TABLES]
        assert len(snapshot["leaderboard"]) == 3

    def test_64_bit_counters_survive_dump_and_restore(self, adapter):
        user = adapter.create_user("google:64")
        adapter.upsert_player_stats(user["id"], total_letters_typed=5_000_000_000,
                                    total_play_time_ms=3_000_000_000)
        snapshot = adapter.dump_all()
        adapter.clear_all()
        adapter.restore_all(snapshot)
        stats = adapter.get_player_stats(user["id"])
        assert stats["total_play_time_ms"] == 3_000_000_000
        assert stats["total_letters_typed"] == 5_000_000_000

    def test_dump_restore_round_trip(self, adapter, make_entry):
        _populate(adapter, make_entry)
        before = adapter.counts()
        snapshot = adapter.dump_all()

        adapter.clear_all()
        assert set(adapter.counts().values()) == {0}

        adapter.restore_all(snapshot)
        assert adapter.counts() == before
        assert adapter.dump_all() == snapshot

    def test_restore_resyncs_identity_counters(self, adapter, make_entry):
        _populate(adapter, make_entry)
        snapshot = adapter.dump_all()
        adapter.clear_all()
        adapter.restore_all(snapshot)
        max_id = max(r["id"] for r in snapshot["leaderboard"])
        assert adapter.insert_leaderboard(make_entry()) == max_id + 1

    def test_restore_rejects_unknown_table(self, adapter, make_entry):
        adapter.insert_leaderboard(make_entry())
        with pytest.raises(ValidationError):
            adapter.restore_all({"leaderboard": [], "widgets": [{"id": 1}]})
        assert adapter.counts()["leaderboard"] == 1

    def test_failed_restore_leaves_data_untouched(self, adapter, make_entry):
        adapter.insert_leaderboard(make_entry())
        bad = {"leaderboard": [{"id": 1, "player_name": None}]}  # NOT NULL violation
        with pytest.raises(Exception):
            adapter.restore_all(bad)
        assert adapter.counts()["leaderboard"] == 1

    def test_reset_scopes(self, adapter, make_entry):
        adapter.insert_leaderboard(make_entry())
        adapter.insert_pack("p", "words", ["a"])
        adapter.set_setting("k", "v")
        adapter.create_user("local:keep")

        adapter.reset("vocab")
        counts = adapter.counts()
        assert (counts["vocab_packs"], counts["leaderboard"]) == (0, 1)

        adapter.reset("all")
        counts = adapter.counts()
        assert (counts["leaderboard"], counts["settings"], counts["users"]) == (0, 0, 1)

        with pytest.raises(ValidationError):
            adapter.reset("everything")


# =============================================================================
# Transactions and the maintenance gate
# =============================================================================


class TestTransactions:

    def test_exception_rolls_back(self, adapter):
        with pytest.raises(RuntimeError):
            with adapter.transaction() as cur:
                adapter._exec(cur, "INSERT INTO settings (key, value) VALUES (?, ?)", ("a", "1"))
                raise RuntimeError("abort")
        assert adapter.get_setting("a") is None

    def test_gate_blocks_writes_from_other_threads(self, adapter, gate, make_entry):
        adapter.insert_leaderboard(make_entry())
        held, release = threading.Event(), threading.Event()

        def holder():
            with gate.hold("test"):
                held.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        try:
            assert held.wait(5)
            with pytest.raises(MaintenanceMode):
                adapter.set_setting("blocked", "1")
            assert len(adapter.query_leaderboard({})) == 1
        finally:
            release.set()
            t.join()
        adapter.set_setting("blocked", "1")
        assert adapter.get_setting("blocked") == "1"

    def test_gate_owner_may_write(self, adapter, gate):
        with gate.hold("owner writes"):
            adapter.set_setting("owner", "yes")
        assert adapter.get_setting("owner") == "yes"

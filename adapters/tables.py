"""
Table catalogue for whole-database dump and restore.

TABLES is ordered parents-first: restore inserts in this order and clears
in reverse, so foreign keys hold at every step on both engines.

Each entry lists the columns a snapshot row may carry and the ordering key
used by dump_all(). ``serial`` marks tables whose integer ``id`` comes from
an identity counter that must be resynced after a restore.
"""

from collections import namedtuple

Table = namedtuple("Table", "name columns order_by serial")

TABLES = (
    Table("settings", ("key", "value"), "key", False),
    Table("users", (
        "id", "external_subject", "email", "display_name", "avatar_url", "role",
        "is_active", "created_at", "updated_at", "last_login_at",
    ), "id", True),
    Table("leaderboard", (
        "id", "player_name", "created_at", "contest_type", "level", "content_mode",
        "duration", "task_target", "score", "accuracy", "cpm", "mistakes",
        "tasks_completed", "time_seconds", "max_streak", "user_id", "is_guest",
        "language", "display_name", "avatar_url",
    ), "id", True),
    Table("vocab_packs", (
        "id", "name", "pack_type", "items", "active", "created_at",
    ), "id", True),
    Table("packs", (
        "id", "language", "type", "topic", "status", "created_by",
        "created_at", "updated_at",
    ), "id", True),
    Table("pack_items", (
        "id", "pack_id", "position", "text", "difficulty", "metadata_json",
    ), "id", True),
    Table("game_preferences", (
        "user_id", "mode", "level", "content_type", "language", "updated_at",
    ), "user_id", False),
    Table("player_stats", (
        "user_id", "total_letters_typed", "total_correct", "total_incorrect",
        "best_wpm", "sessions_count", "total_play_time_ms", "streak_days",
        "last_session_at",
    ), "user_id", False),
    Table("auth_identities", (
        "id", "user_id", "provider", "provider_subject", "password_hash",
        "created_at", "updated_at",
    ), "id", True),
    Table("auth_sessions", (
        "id", "user_id", "token_hash", "created_at", "expires_at", "last_seen_at",
        "user_agent", "ip", "revoked_at",
    ), "id", True),
    Table("password_resets", (
        "id", "user_id", "token_hash", "expires_at", "used_at", "created_at",
        "requested_ip",
    ), "id", True),
    Table("user_secrets", (
        "id", "user_id", "secret_key", "ciphertext", "iv", "auth_tag",
        "created_at", "updated_at",
    ), "id", True),
    Table("system_secrets", (
        "secret_key", "ciphertext", "iv", "auth_tag", "updated_at", "updated_by",
    ), "secret_key", False),
    Table("audit_log", (
        "id", "actor_user_id", "actor_role", "action", "target_type", "target_id",
        "metadata", "request_id", "ip", "created_at",
    ), "id", True),
    Table("crash_events", (
        "id", "occurred_at", "app_version", "app_build", "app_commit", "app_mode",
        "crash_type", "startup_phase", "error_name", "error_message", "stack_trace",
        "hostname", "uptime_seconds", "metadata_json", "acknowledged_at",
        "acknowledged_by", "resolved",
    ), "id", True),
    Table("active_sessions", (
        "session_id", "user_id", "started_at", "last_seen_at", "mode",
        "is_authorized",
    ), "session_id", False),
    Table("app_config", (
        "id", "key", "scope", "scope_id", "value_json", "updated_at", "updated_by",
    ), "id", True),
)

BY_NAME = {t.name: t for t in TABLES}

# reset(scope) → tables it empties
RESET_SCOPES = {
    "all": ("leaderboard", "vocab_packs", "settings"),
    "leaderboard": ("leaderboard",),
    "results": ("leaderboard",),
    "vocab": ("vocab_packs",),
}

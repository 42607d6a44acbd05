"""
Operational queries: app config rows, audit log, crash events and
active-session heartbeats.
"""

from .util import decode, dumps, iso_ago, now_iso

CONFIG_COLUMNS = ("key", "scope", "scope_id", "value_json", "updated_at", "updated_by")

CRASH_COLUMNS = (
    "occurred_at", "app_version", "app_build", "app_commit", "app_mode", "crash_type",
    "startup_phase", "error_name", "error_message", "stack_trace", "hostname",
    "uptime_seconds", "metadata_json", "acknowledged_at", "acknowledged_by", "resolved",
)


class TelemetryQueries:

    # ── App config ────────────────────────────────────────────
    # value_json holds any JSON value; decoded on the way out.

    def get_config(self, key, scope="global", scope_id="global"):
        row = self.fetch_one(
            "SELECT * FROM app_config WHERE key = ? AND scope = ? AND scope_id = ? LIMIT 1",
            (key, scope, scope_id),
        )
        return decode(row, "value_json")

    def set_config(self, key, scope, scope_id, value, updated_by=None):
        self.execute(
            self.upsert("app_config", ("key", "scope", "scope_id"), CONFIG_COLUMNS),
            (key, scope, scope_id, dumps(value), now_iso(), updated_by),
        )

    def set_configs(self, entries, updated_by=None):
        """Write many (key, scope, scope_id, value) entries in one transaction."""
        sql = self.upsert("app_config", ("key", "scope", "scope_id"), CONFIG_COLUMNS)
        now = now_iso()
        with self.transaction() as cur:
            for key, scope, scope_id, value in entries:
                self._exec(cur, sql, (key, scope, scope_id, dumps(value), now, updated_by))

    def list_config(self, scope="global", scope_id="global") -> list:
        rows = self.fetch_all(
            "SELECT * FROM app_config WHERE scope = ? AND scope_id = ? ORDER BY key ASC",
            (scope, scope_id),
        )
        return decode(rows, "value_json")

    # ── Audit log ─────────────────────────────────────────────

    def insert_audit_log(self, entry: dict) -> int:
        return self.insert(
            "INSERT INTO audit_log (actor_user_id, actor_role, action, target_type, target_id, "
            "metadata, request_id, ip, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.get("actor_user_id"),
                entry.get("actor_role"),
                entry["action"],
                entry.get("target_type"),
                entry.get("target_id"),
                dumps(entry.get("metadata")),
                entry.get("request_id"),
                entry.get("ip"),
                entry.get("created_at") or now_iso(),
            ),
        )

    def list_audit_logs(self, limit=100) -> list:
        """Most recent ``limit`` entries, newest first."""
        rows = self.fetch_all("SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (int(limit),))
        return decode(rows, "metadata")

    # ── Crash events ──────────────────────────────────────────

    def insert_crash_event(self, event: dict) -> int:
        row = dict(event)
        row.setdefault("occurred_at", now_iso())
        row["metadata_json"] = dumps(row.get("metadata_json"))
        row["resolved"] = 1 if row.get("resolved") else 0
        return self.insert(
            f"INSERT INTO crash_events ({', '.join(CRASH_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in CRASH_COLUMNS)})",
            [row.get(c) for c in CRASH_COLUMNS],
        )

    def list_crash_events(self, limit=50, unresolved_only=False) -> list:
        where = "WHERE resolved = 0" if unresolved_only else ""
        rows = self.fetch_all(
            f"SELECT * FROM crash_events {where} ORDER BY occurred_at DESC, id DESC LIMIT ?",
            (int(limit),),
        )
        return decode(rows, "metadata_json")

    def get_crash_event(self, event_id):
        return decode(self.fetch_one("SELECT * FROM crash_events WHERE id = ?", (event_id,)), "metadata_json")

    def acknowledge_crash_event(self, event_id, by=None):
        self.execute(
            "UPDATE crash_events SET resolved = 1, acknowledged_at = ?, acknowledged_by = ? WHERE id = ?",
            (now_iso(), by, event_id),
        )
        return self.get_crash_event(event_id)

    # ── Active sessions ───────────────────────────────────────

    def upsert_active_session(self, session_id, mode, user_id=None, is_authorized=False):
        """Heartbeat. started_at is set once; everything else follows the latest beat."""
        now = now_iso()
        sql = self.upsert(
            "active_sessions",
            ("session_id",),
            ("session_id", "user_id", "started_at", "last_seen_at", "mode", "is_authorized"),
            insert_only=("started_at",),
        )
        self.execute(sql, (session_id, user_id, now, now, mode, 1 if is_authorized else 0))

    def cleanup_active_sessions(self, max_age_seconds=120) -> int:
        return self.execute("DELETE FROM active_sessions WHERE last_seen_at < ?", (iso_ago(max_age_seconds),))

    def get_active_session_stats(self, max_age_seconds=120) -> dict:
        threshold = iso_ago(max_age_seconds)
        with self.transaction(readonly=True) as cur:
            totals = self._one(self._exec(
                cur,
                "SELECT COUNT(*) AS total, "
                "SUM(CASE WHEN is_authorized = 1 THEN 1 ELSE 0 END) AS authorized, "
                "SUM(CASE WHEN is_authorized = 0 THEN 1 ELSE 0 END) AS guests "
                "FROM active_sessions WHERE last_seen_at >= ?",
                (threshold,),
            ))
            modes = self._rows(self._exec(
                cur,
                "SELECT mode, COUNT(*) AS count FROM active_sessions WHERE last_seen_at >= ? "
                "GROUP BY mode ORDER BY count DESC, mode ASC",
                (threshold,),
            ))
        return {
            "total": int(totals["total"] or 0),
            "authorized": int(totals["authorized"] or 0),
            "guests": int(totals["guests"] or 0),
            "modes": [{"mode": m["mode"], "count": int(m["count"])} for m in modes],
        }

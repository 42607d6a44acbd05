"""
Content queries: settings, leaderboard, legacy vocab packs, language packs.

Mixed into StorageAdapter — every method runs on the adapter's own
transaction plumbing, so the SQL here is shared by both engines.
"""

from .errors import NotFoundError, ValidationError
from .util import decode, dumps, now_iso

LEADERBOARD_REQUIRED = (
    "player_name", "contest_type", "level", "content_mode", "score", "accuracy",
    "cpm", "mistakes", "tasks_completed", "time_seconds", "max_streak",
)

LEADERBOARD_COLUMNS = LEADERBOARD_REQUIRED + (
    "created_at", "duration", "task_target", "user_id", "is_guest", "language",
    "display_name", "avatar_url",
)

# Request-side filter names → column-side names
FILTER_ALIASES = {
    "contestType": "contest_type",
    "contentMode": "content_mode",
    "taskTarget": "task_target",
    "onlyAuthorized": "only_authorized",
    "createdAfter": "created_after",
}

LEADERBOARD_SORTS = {
    "score": "score",
    "accuracy": "accuracy",
    "cpm": "cpm",
    "date": "created_at",
    "created_at": "created_at",
}

PACK_STATUSES = ("DRAFT", "PUBLISHED", "ARCHIVED")


def _leaderboard_where(filters):
    f = {FILTER_ALIASES.get(k, k): v for k, v in (filters or {}).items()}
    clauses, params = ["1=1"], []
    if f.get("contest_type"):
        clauses.append("contest_type = ?")
        params.append(f["contest_type"])
    if f.get("level"):
        clauses.append("level = ?")
        params.append(int(f["level"]))
    if f.get("content_mode"):
        clauses.append("content_mode = ?")
        params.append(f["content_mode"])
    # duration only narrows timed contests, task_target only task contests
    if f.get("duration") and f.get("contest_type") == "time":
        clauses.append("duration = ?")
        params.append(int(f["duration"]))
    if f.get("task_target") and f.get("contest_type") == "tasks":
        clauses.append("task_target = ?")
        params.append(int(f["task_target"]))
    if f.get("only_authorized"):
        clauses.append("is_guest = 0")
    if f.get("language"):
        clauses.append("language = ?")
        params.append(f["language"])
    if f.get("created_after"):
        clauses.append("created_at >= ?")
        params.append(f["created_after"])
    return "WHERE " + " AND ".join(clauses), params


class ContentQueries:

    # ── Settings ──────────────────────────────────────────────

    def get_setting(self, key):
        row = self.fetch_one("SELECT value FROM settings WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_setting(self, key, value):
        self.execute(self.upsert("settings", ("key",), ("key", "value")), (key, value))

    # ── Leaderboard ───────────────────────────────────────────

    def insert_leaderboard(self, entry: dict) -> int:
        missing = [c for c in LEADERBOARD_REQUIRED if entry.get(c) is None]
        if missing:
            raise ValidationError(f"Leaderboard entry missing: {', '.join(missing)}")
        row = {
            "created_at": now_iso(),
            "is_guest": 1,
            "language": "en",
            **{k: v for k, v in entry.items() if k in LEADERBOARD_COLUMNS},
        }
        row["is_guest"] = 1 if row["is_guest"] else 0
        cols = [c for c in LEADERBOARD_COLUMNS if c in row]
        return self.insert(
            f"INSERT INTO leaderboard ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
            [row[c] for c in cols],
        )

    def query_leaderboard(self, filters=None) -> list:
        """Top 20 matching rows by score, then accuracy."""
        where, params = _leaderboard_where(filters)
        return self.fetch_all(
            f"SELECT * FROM leaderboard {where} ORDER BY score DESC, accuracy DESC, id ASC LIMIT 20",
            params,
        )

    def query_leaderboard_page(self, filters=None, sort_by="score", sort_dir="desc",
                               page=1, page_size=20) -> dict:
        where, params = _leaderboard_where(filters)
        order = LEADERBOARD_SORTS.get(sort_by, "score")
        direction = "ASC" if str(sort_dir).lower() == "asc" else "DESC"
        page = max(1, int(page or 1))
        page_size = max(5, min(100, int(page_size or 20)))
        with self.transaction(readonly=True) as cur:
            total = self._one(self._exec(cur, f"SELECT COUNT(*) AS c FROM leaderboard {where}", params))
            rows = self._rows(self._exec(
                cur,
                f"SELECT * FROM leaderboard {where} ORDER BY {order} {direction}, id ASC LIMIT ? OFFSET ?",
                params + [page_size, (page - 1) * page_size],
            ))
        return {"rows": rows, "total": int(total["c"]), "page": page, "page_size": page_size}

    # ── Legacy vocab packs ────────────────────────────────────
    # At most one pack per pack_type carries active = 1.

    def list_packs(self) -> list:
        return decode(self.fetch_all("SELECT * FROM vocab_packs ORDER BY created_at DESC, id DESC"), "items")

    def get_pack(self, pack_id):
        return decode(self.fetch_one("SELECT * FROM vocab_packs WHERE id = ?", (pack_id,)), "items")

    def get_active_pack(self, pack_type):
        row = self.fetch_one(
            "SELECT * FROM vocab_packs WHERE pack_type = ? AND active = 1 ORDER BY id DESC LIMIT 1",
            (pack_type,),
        )
        return decode(row, "items")

    def insert_pack(self, name, pack_type, items, active=False, created_at=None) -> int:
        """Insert a pack; ``active=True`` also deactivates its siblings."""
        with self.transaction() as cur:
            if active:
                self._lock_pack_type(cur, pack_type)
                self._exec(cur, "UPDATE vocab_packs SET active = 0 WHERE pack_type = ?", (pack_type,))
            return self._insert_id(
                cur,
                "INSERT INTO vocab_packs (name, pack_type, items, active, created_at) VALUES (?, ?, ?, ?, ?)",
                (name, pack_type, dumps(list(items)), 1 if active else 0, created_at or now_iso()),
            )

    def update_pack(self, pack_id, name=None, items=None):
        self.execute(
            "UPDATE vocab_packs SET name = COALESCE(?, name), items = COALESCE(?, items) WHERE id = ?",
            (name, dumps(list(items)) if items is not None else None, pack_id),
        )

    def delete_pack(self, pack_id):
        self.execute("DELETE FROM vocab_packs WHERE id = ?", (pack_id,))

    def activate_pack(self, pack_id, pack_type):
        """
        Make ``pack_id`` the only active pack of ``pack_type``.

        Deactivate-all and activate-one run in one transaction, serialized
        per type by the backend, so concurrent activations always leave
        exactly one active row.
        """
        with self.transaction() as cur:
            self._lock_pack_type(cur, pack_type)
            self._exec(cur, "UPDATE vocab_packs SET active = 0 WHERE pack_type = ?", (pack_type,))
            hit = self._exec(
                cur,
                "UPDATE vocab_packs SET active = 1 WHERE id = ? AND pack_type = ?",
                (pack_id, pack_type),
            ).rowcount
            if hit != 1:
                raise NotFoundError(f"No {pack_type} pack with id {pack_id}")

    # ── Language packs ────────────────────────────────────────

    def create_language_pack(self, language, type, topic=None, status="DRAFT", created_by=None) -> int:
        _check_status(status)
        now = now_iso()
        return self.insert(
            "INSERT INTO packs (language, type, topic, status, created_by, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (language, type, topic, status, created_by, now, now),
        )

    def update_language_pack(self, pack_id, topic=None, status=None):
        if status is not None:
            _check_status(status)
        self.execute(
            "UPDATE packs SET topic = COALESCE(?, topic), status = COALESCE(?, status), updated_at = ? WHERE id = ?",
            (topic, status, now_iso(), pack_id),
        )

    def publish_language_pack(self, pack_id):
        self._transition(pack_id, "PUBLISHED", ("DRAFT",))

    def archive_language_pack(self, pack_id):
        self._transition(pack_id, "ARCHIVED", ("DRAFT", "PUBLISHED"))

    def _transition(self, pack_id, status, allowed_from):
        with self.transaction() as cur:
            pack = self._one(self._exec(cur, "SELECT status FROM packs WHERE id = ?", (pack_id,)))
            if pack is None:
                raise NotFoundError(f"Language pack {pack_id} not found")
            if pack["status"] not in allowed_from:
                raise ValidationError(f"Cannot move pack {pack_id} from {pack['status']} to {status}")
            self._exec(cur, "UPDATE packs SET status = ?, updated_at = ? WHERE id = ?",
                       (status, now_iso(), pack_id))

    def replace_language_pack_items(self, pack_id, items):
        """Swap the whole ordered item list of a pack atomically."""
        with self.transaction() as cur:
            if self._one(self._exec(cur, "SELECT id FROM packs WHERE id = ?", (pack_id,))) is None:
                raise NotFoundError(f"Language pack {pack_id} not found")
            self._exec(cur, "DELETE FROM pack_items WHERE pack_id = ?", (pack_id,))
            for position, item in enumerate(items):
                self._exec(
                    cur,
                    "INSERT INTO pack_items (pack_id, position, text, difficulty, metadata_json) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (pack_id, position, item["text"], item.get("difficulty"), dumps(item.get("metadata_json"))),
                )
            self._exec(cur, "UPDATE packs SET updated_at = ? WHERE id = ?", (now_iso(), pack_id))

    def list_language_packs(self, language=None, type=None, status=None) -> list:
        clauses, params = ["1=1"], []
        for col, val in (("language", language), ("type", type), ("status", status)):
            if val:
                clauses.append(f"{col} = ?")
                params.append(val)
        return self.fetch_all(
            f"SELECT * FROM packs WHERE {' AND '.join(clauses)} ORDER BY updated_at DESC, id DESC",
            params,
        )

    def get_language_pack(self, pack_id):
        return self.fetch_one("SELECT * FROM packs WHERE id = ?", (pack_id,))

    def get_language_pack_items(self, pack_id) -> list:
        rows = self.fetch_all(
            "SELECT * FROM pack_items WHERE pack_id = ? ORDER BY position ASC, id ASC", (pack_id,)
        )
        return decode(rows, "metadata_json")

    def list_published_languages(self, type) -> list:
        rows = self.fetch_all(
            "SELECT DISTINCT language FROM packs WHERE type = ? AND status = 'PUBLISHED' ORDER BY language ASC",
            (type,),
        )
        return [r["language"] for r in rows]

    def get_published_pack_items(self, language, type) -> list:
        """Items of every PUBLISHED pack for (language, type); drafts and archives are hidden."""
        rows = self.fetch_all(
            "SELECT i.* FROM pack_items i JOIN packs p ON p.id = i.pack_id "
            "WHERE p.language = ? AND p.type = ? AND p.status = 'PUBLISHED' "
            "ORDER BY p.id ASC, i.position ASC, i.id ASC",
            (language, type),
        )
        return decode(rows, "metadata_json")


def _check_status(status):
    if status not in PACK_STATUSES:
        raise ValidationError(f"Invalid pack status '{status}'. Supported: {', '.join(PACK_STATUSES)}")

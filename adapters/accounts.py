"""
Account queries: users, auth identities, sessions, password resets,
secrets, per-user game preferences and stats.

Every insert-or-update here is a single ON CONFLICT statement, so
concurrent upserts of the same key never surface a duplicate-key error —
the last writer wins and every caller reads back a whole row.
"""

from .util import is_expired, now_iso

USER_FIELDS = (
    "id, external_subject, email, display_name, avatar_url, role, is_active, "
    "created_at, updated_at, last_login_at"
)


class AccountQueries:

    # ── Users ─────────────────────────────────────────────────

    def create_user(self, external_subject, role="USER", email=None, display_name=None,
                    avatar_url=None) -> dict:
        now = now_iso()
        with self.transaction() as cur:
            user_id = self._insert_id(
                cur,
                "INSERT INTO users (external_subject, email, display_name, avatar_url, role, "
                "is_active, created_at, updated_at, last_login_at) VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)",
                (external_subject, email, display_name, avatar_url, role, now, now, now),
            )
            return self._one(self._exec(cur, f"SELECT {USER_FIELDS} FROM users WHERE id = ?", (user_id,)))

    def find_user_by_id(self, user_id):
        return self.fetch_one(f"SELECT {USER_FIELDS} FROM users WHERE id = ?", (user_id,))

    def find_user_by_email(self, email):
        return self.fetch_one(
            f"SELECT {USER_FIELDS} FROM users WHERE lower(email) = lower(?) LIMIT 1", (email,)
        )

    def find_user_by_external_subject(self, external_subject):
        return self.fetch_one(
            f"SELECT {USER_FIELDS} FROM users WHERE external_subject = ? LIMIT 1", (external_subject,)
        )

    def find_user_by_display_name(self, display_name):
        return self.fetch_one(
            f"SELECT {USER_FIELDS} FROM users WHERE lower(trim(display_name)) = lower(trim(?)) LIMIT 1",
            (display_name,),
        )

    def get_owner_user(self):
        return self.fetch_one(
            f"SELECT {USER_FIELDS} FROM users WHERE role = 'OWNER' ORDER BY id ASC LIMIT 1"
        )

    def list_users(self) -> list:
        return self.fetch_all(f"SELECT {USER_FIELDS} FROM users ORDER BY id ASC")

    def update_user_role(self, user_id, role):
        self.execute("UPDATE users SET role = ?, updated_at = ? WHERE id = ?", (role, now_iso(), user_id))
        return self.find_user_by_id(user_id)

    def touch_user_login(self, user_id):
        now = now_iso()
        self.execute("UPDATE users SET last_login_at = ?, updated_at = ? WHERE id = ?", (now, now, user_id))

    def update_user_profile(self, user_id, display_name=None, avatar_url=None):
        self.execute(
            "UPDATE users SET display_name = COALESCE(?, display_name), "
            "avatar_url = COALESCE(?, avatar_url), updated_at = ? WHERE id = ?",
            (display_name, avatar_url, now_iso(), user_id),
        )
        return self.find_user_by_id(user_id)

    # ── Auth identities ───────────────────────────────────────

    def find_auth_identity(self, provider, provider_subject):
        return self.fetch_one(
            "SELECT * FROM auth_identities WHERE provider = ? AND provider_subject = ? LIMIT 1",
            (provider, provider_subject),
        )

    def find_password_identity_by_email(self, email):
        return self.fetch_one(
            "SELECT ai.*, u.email, u.display_name, u.avatar_url, u.role, u.is_active "
            "FROM auth_identities ai JOIN users u ON u.id = ai.user_id "
            "WHERE ai.provider = 'password' AND lower(u.email) = lower(?) LIMIT 1",
            (email,),
        )

    def upsert_auth_identity(self, user_id, provider, provider_subject=None, password_hash=None):
        """One identity per (user, provider). A NULL password hash keeps the stored one."""
        now = now_iso()
        sql = self.upsert(
            "auth_identities",
            ("user_id", "provider"),
            ("user_id", "provider", "provider_subject", "password_hash", "created_at", "updated_at"),
            keep=("password_hash",),
            insert_only=("created_at",),
        )
        self.execute(sql, (user_id, provider, provider_subject, password_hash, now, now))

    # ── Sessions ──────────────────────────────────────────────

    def create_auth_session(self, user_id, token_hash, expires_at, user_agent=None, ip=None) -> int:
        now = now_iso()
        return self.insert(
            "INSERT INTO auth_sessions (user_id, token_hash, created_at, expires_at, last_seen_at, "
            "user_agent, ip) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (user_id, token_hash, now, expires_at, now, user_agent, ip),
        )

    def get_auth_session(self, token_hash):
        """The live session for ``token_hash`` joined with its user, or None if revoked/expired."""
        row = self.fetch_one(
            "SELECT s.*, u.external_subject, u.email, u.display_name, u.avatar_url, u.role, u.is_active "
            "FROM auth_sessions s JOIN users u ON u.id = s.user_id "
            "WHERE s.token_hash = ? AND s.revoked_at IS NULL LIMIT 1",
            (token_hash,),
        )
        if row is None or is_expired(row["expires_at"]):
            return None
        return row

    def touch_auth_session(self, token_hash):
        self.execute("UPDATE auth_sessions SET last_seen_at = ? WHERE token_hash = ?", (now_iso(), token_hash))

    def revoke_auth_session(self, token_hash):
        self.execute("UPDATE auth_sessions SET revoked_at = ? WHERE token_hash = ?", (now_iso(), token_hash))

    def revoke_auth_sessions_for_user(self, user_id):
        self.execute(
            "UPDATE auth_sessions SET revoked_at = ? WHERE user_id = ? AND revoked_at IS NULL",
            (now_iso(), user_id),
        )

    def cleanup_auth_sessions(self):
        """Purge revoked/expired sessions and used/expired password resets."""
        now = now_iso()
        with self.transaction() as cur:
            self._exec(cur, "DELETE FROM auth_sessions WHERE revoked_at IS NOT NULL OR expires_at < ?", (now,))
            self._exec(cur, "DELETE FROM password_resets WHERE used_at IS NOT NULL OR expires_at < ?", (now,))

    # ── Password resets ───────────────────────────────────────

    def create_password_reset(self, user_id, token_hash, expires_at, requested_ip=None) -> int:
        return self.insert(
            "INSERT INTO password_resets (user_id, token_hash, expires_at, used_at, created_at, requested_ip) "
            "VALUES (?, ?, ?, NULL, ?, ?)",
            (user_id, token_hash, expires_at, now_iso(), requested_ip),
        )

    def consume_password_reset(self, token_hash):
        """Mark a reset token used and return it; None if unknown, used or expired."""
        with self.transaction() as cur:
            row = self._one(self._exec(
                cur, "SELECT * FROM password_resets WHERE token_hash = ? LIMIT 1", (token_hash,)
            ))
            if row is None or row["used_at"] or is_expired(row["expires_at"]):
                return None
            # guard on used_at so two consumers cannot both win
            claimed = self._exec(
                cur, "UPDATE password_resets SET used_at = ? WHERE id = ? AND used_at IS NULL",
                (now_iso(), row["id"]),
            ).rowcount
            return row if claimed == 1 else None

    # ── Secrets ───────────────────────────────────────────────
    # Values arrive already encrypted; the store never sees plaintext.

    def get_user_secret(self, user_id, secret_key):
        return self.fetch_one(
            "SELECT * FROM user_secrets WHERE user_id = ? AND secret_key = ? LIMIT 1", (user_id, secret_key)
        )

    def upsert_user_secret(self, user_id, secret_key, encrypted: dict):
        now = now_iso()
        sql = self.upsert(
            "user_secrets",
            ("user_id", "secret_key"),
            ("user_id", "secret_key", "ciphertext", "iv", "auth_tag", "created_at", "updated_at"),
            insert_only=("created_at",),
        )
        self.execute(sql, (user_id, secret_key, encrypted["ciphertext"], encrypted["iv"],
                           encrypted["auth_tag"], now, now))

    def get_system_secret(self, secret_key):
        return self.fetch_one("SELECT * FROM system_secrets WHERE secret_key = ? LIMIT 1", (secret_key,))

    def set_system_secret(self, secret_key, encrypted: dict, updated_by=None):
        sql = self.upsert(
            "system_secrets",
            ("secret_key",),
            ("secret_key", "ciphertext", "iv", "auth_tag", "updated_at", "updated_by"),
        )
        self.execute(sql, (secret_key, encrypted["ciphertext"], encrypted["iv"], encrypted["auth_tag"],
                           now_iso(), updated_by))

    # ── Game preferences / player stats ───────────────────────

    def get_game_preferences(self, user_id):
        return self.fetch_one("SELECT * FROM game_preferences WHERE user_id = ? LIMIT 1", (user_id,))

    def upsert_game_preferences(self, user_id, mode="learning", level=1, content_type="default",
                                language="en", updated_at=None):
        sql = self.upsert(
            "game_preferences",
            ("user_id",),
            ("user_id", "mode", "level", "content_type", "language", "updated_at"),
        )
        self.execute(sql, (user_id, mode, level, content_type, language, updated_at or now_iso()))

    def get_player_stats(self, user_id):
        return self.fetch_one("SELECT * FROM player_stats WHERE user_id = ? LIMIT 1", (user_id,))

    def upsert_player_stats(self, user_id, total_letters_typed=0, total_correct=0, total_incorrect=0,
                            best_wpm=0, sessions_count=0, total_play_time_ms=0, streak_days=0,
                            last_session_at=None):
        sql = self.upsert(
            "player_stats",
            ("user_id",),
            ("user_id", "total_letters_typed", "total_correct", "total_incorrect", "best_wpm",
             "sessions_count", "total_play_time_ms", "streak_days", "last_session_at"),
        )
        self.execute(sql, (user_id, total_letters_typed, total_correct, total_incorrect, best_wpm,
                           sessions_count, total_play_time_ms, streak_days, last_session_at))

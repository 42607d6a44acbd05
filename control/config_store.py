"""
Config store — versioned, cached, allow-listed key/value settings.

Sits on top of any adapter's app_config rows:

    store = ConfigStore(adapter)
    store.set_safe("theme.defaults", {"accent": "#3366ff"}, updated_by="admin")
    store.get("theme.defaults")          # served from cache for ttl seconds
    store.get_version()                  # bumps on every other write

Only keys of SafeConfigKey are accepted, and every payload is validated
against the key's schema before it reaches the backend. Reads are cached
per (key, scope, scope_id) for a short TTL; a write invalidates its own
entry. The cache is per process, so a second service instance only sees a
write once its own entry expires.
"""

import copy
import logging
import threading
import time
from enum import Enum
from typing import Any, Dict, Literal, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, TypeAdapter

from adapters.errors import ValidationError

log = logging.getLogger(__name__)

DEFAULT_TTL = 5.0
VERSION_KEY = "app.config_version"


class SafeConfigKey(str, Enum):
    APP_SETTINGS = "app.settings"
    APP_FEATURES = "app.features"
    APP_RUNTIME = "app.runtime"
    APP_ABOUT = "app.about"
    APP_CONFIG_VERSION = "app.config_version"
    APP_WIZARD = "app.wizard"
    SERVICE_EMAIL_STATUS = "service.email.status"
    CONTEST_RULES = "contest.rules"
    GENERATOR_DEFAULTS = "generator.defaults"
    THEME_DEFAULTS = "theme.defaults"
    SERVICE_EMAIL = "service.email"
    AUTH_PROVIDERS = "auth.providers"
    DB_DRIVER_META = "db.driver_meta"
    LANGUAGE_PACKS_META = "language.packs.meta"


class Scope(str, Enum):
    GLOBAL = "global"
    TENANT = "tenant"
    USER = "user"


# Written by the service itself, never round-tripped through export/import
RESERVED_KEYS = (SafeConfigKey.APP_CONFIG_VERSION, SafeConfigKey.DB_DRIVER_META)


# ── Payload schemas ───────────────────────────────────────────

class DriverMeta(BaseModel):
    """Active-backend pointer plus the bookkeeping of the last switch."""

    model_config = ConfigDict(extra="forbid")

    active_driver: Literal["embedded", "networked"]
    previous_driver: Optional[Literal["embedded", "networked"]] = None
    snapshot_file: Optional[str] = None
    switched_at: Optional[str] = None
    switched_by: Optional[str] = None
    rolled_back_at: Optional[str] = None


class EmailStatus(BaseModel):
    """Outcome of the last SMTP test."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    last_test_ok: bool = Field(default=False, alias="lastTestOk")
    last_error: str = Field(default="", alias="lastError")
    last_test_at: Optional[str] = Field(default=None, alias="lastTestAt")


_OBJECT = TypeAdapter(Dict[str, Any])

PAYLOAD_SCHEMAS = {key: _OBJECT for key in SafeConfigKey}
PAYLOAD_SCHEMAS[SafeConfigKey.APP_CONFIG_VERSION] = TypeAdapter(PositiveInt)
PAYLOAD_SCHEMAS[SafeConfigKey.DB_DRIVER_META] = TypeAdapter(DriverMeta)
PAYLOAD_SCHEMAS[SafeConfigKey.SERVICE_EMAIL_STATUS] = TypeAdapter(EmailStatus)


def safe_key(key) -> SafeConfigKey:
    try:
        return SafeConfigKey(key)
    except ValueError:
        raise ValidationError(f"Unsupported config key '{key}'", details={"key": str(key)}) from None


def scope_value(scope) -> str:
    try:
        return Scope(scope).value
    except ValueError:
        raise ValidationError(
            f"Invalid config scope '{scope}'. Supported: {', '.join(s.value for s in Scope)}"
        ) from None


def validate_payload(key, value):
    """Check ``value`` against the schema of ``key``; return its JSON form."""
    k = safe_key(key)
    schema = PAYLOAD_SCHEMAS[k]
    try:
        return schema.dump_python(schema.validate_python(value), mode="json")
    except pydantic.ValidationError as exc:
        raise ValidationError(
            f"Invalid payload for '{k.value}'",
            details={
                "key": k.value,
                "errors": exc.errors(include_url=False, include_context=False, include_input=False),
            },
        ) from None


class ConfigStore:

    def __init__(self, repo, ttl: float = DEFAULT_TTL):
        self.repo = repo
        self.ttl = ttl
        self._cache = {}   # (key, scope, scope_id) → (value, expires_at)
        self._cache_lock = threading.Lock()
        self._version_lock = threading.Lock()

    # ── Reads ─────────────────────────────────────────────────

    def get(self, key, scope="global", scope_id="global", fallback=None):
        """
        Read-through cached lookup. Missing keys yield ``fallback``.

        Callers get their own copy; mutating it never reaches the cache.
        """
        key = safe_key(key).value
        scope = scope_value(scope)
        cache_key = (key, scope, scope_id)
        now = time.monotonic()
        with self._cache_lock:
            hit = self._cache.get(cache_key)
            if hit is not None and hit[1] > now:
                return copy.deepcopy(hit[0])
        row = self.repo.get_config(key, scope, scope_id)
        value = row["value_json"] if row else fallback
        with self._cache_lock:
            self._cache[cache_key] = (value, now + self.ttl)
        return copy.deepcopy(value)

    def list(self, scope="global", scope_id="global"):
        return self.repo.list_config(scope_value(scope), scope_id)

    def get_version(self) -> int:
        row = self.repo.get_config(VERSION_KEY, "global", "global")
        if not row or not row["value_json"]:
            return 1
        return int(row["value_json"])

    # ── Writes ────────────────────────────────────────────────

    def set_safe(self, key, value, scope="global", scope_id="global", updated_by="system") -> dict:
        """
        Validate, write through, invalidate, bump the version.

        Writing the version key itself does not bump it again.
        """
        k = safe_key(key)
        scope = scope_value(scope)
        payload = validate_payload(k, value)
        self.repo.set_config(k.value, scope, scope_id, payload, updated_by)
        self.invalidate(k.value, scope, scope_id)
        if k is not SafeConfigKey.APP_CONFIG_VERSION:
            self._bump_version(updated_by)
        log.debug("config %s [%s:%s] set by %s", k.value, scope, scope_id, updated_by)
        return {"key": k.value, "scope": scope, "scope_id": scope_id, "value": payload}

    def export_safe_config(self):
        """Global rows of allow-listed keys, minus the reserved ones."""
        reserved = {k.value for k in RESERVED_KEYS}
        allowed = {k.value for k in SafeConfigKey}
        return [
            {"key": r["key"], "scope": r["scope"], "scope_id": r["scope_id"], "value_json": r["value_json"]}
            for r in self.repo.list_config("global", "global")
            if r["key"] in allowed and r["key"] not in reserved
        ]

    def import_safe_config(self, rows, updated_by="system") -> dict:
        """
        Import exported rows, all or nothing.

        Every row is validated before anything is written; the writes then
        share one transaction. Accepts ``scope_id``/``value_json`` as well
        as the camelCase ``scopeId``/``valueJson`` spellings.
        """
        if not isinstance(rows, list):
            raise ValidationError("Invalid config payload: expected a list of rows")

        entries = []
        for i, row in enumerate(rows):
            if not isinstance(row, dict) or "key" not in row:
                raise ValidationError(f"Invalid config row at index {i}")
            k = safe_key(row["key"])
            if k in RESERVED_KEYS:
                raise ValidationError(f"Config key '{k.value}' cannot be imported", details={"key": k.value})
            scope = scope_value(row.get("scope") or "global")
            scope_id = row.get("scope_id") or row.get("scopeId") or "global"
            value = row["value_json"] if "value_json" in row else row.get("valueJson")
            entries.append((k.value, scope, scope_id, validate_payload(k, value)))

        if entries:
            self.repo.set_configs(entries, updated_by)
            for key, scope, scope_id, _ in entries:
                self.invalidate(key, scope, scope_id)
            self._bump_version(updated_by)
        log.info("imported %d config row(s) by %s", len(entries), updated_by)
        return {"imported": len(entries)}

    def invalidate(self, key=None, scope="global", scope_id="global"):
        """Drop one cache entry, or the whole cache when ``key`` is None."""
        with self._cache_lock:
            if key is None:
                self._cache.clear()
            else:
                self._cache.pop((key, scope, scope_id), None)

    def _bump_version(self, updated_by):
        with self._version_lock:
            version = self.get_version() + 1
            self.repo.set_config(VERSION_KEY, "global", "global", version, updated_by)
            self.invalidate(VERSION_KEY, "global", "global")
        return version

    def __repr__(self):
        return f"<ConfigStore {self.repo!r} ttl={self.ttl}>"

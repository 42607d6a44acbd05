"""
Storage settings — ~/.ktrain.json plus environment overrides.

File layout (every section optional):

    {
      "backend": "embedded",
      "sqlite":   {"sqlite_path": "~/.ktrain/ktrain.sqlite"},
      "postgres": {"connection_string": "postgresql://ktrain@db/ktrain",
                   "pool_max": 20},
      "control_path": "~/.ktrain/control.sqlite",
      "dump_dir": "~/.ktrain/switch-dumps"
    }

The file path comes from KTRAIN_CONFIG when set. Environment variables win
over the file: KTRAIN_BACKEND, SQLITE_PATH (DB_PATH), POSTGRES_URL,
POSTGRES_HOST, POSTGRES_PORT, POSTGRES_DB, POSTGRES_USER,
POSTGRES_PASSWORD, POSTGRES_POOL_MAX, POSTGRES_IDLE_TIMEOUT_MS,
POSTGRES_CONNECT_TIMEOUT_MS, DB_SWITCH_DUMP_DIR.

``backend`` only seeds the active-backend pointer the first time the
control store is created; afterwards the pointer is the source of truth.
"""

import json
import logging
import os
from typing import Literal, Optional

import pydantic
from pydantic import BaseModel, Field, field_validator

from adapters.errors import ValidationError
from adapters.postgres import PostgresAdapter
from adapters.sqlite import SQLiteAdapter

log = logging.getLogger(__name__)

CFG_PATH = os.path.expanduser("~/.ktrain.json")

_BACKEND_ALIASES = {
    "embedded": "embedded",
    "sqlite": "embedded",
    "networked": "networked",
    "postgres": "networked",
    "postgresql": "networked",
    "pg": "networked",
}

# env var → (section, field); section None means top level
_ENV = {
    "KTRAIN_BACKEND": (None, "backend"),
    "DB_PATH": ("sqlite", "sqlite_path"),
    "SQLITE_PATH": ("sqlite", "sqlite_path"),
    "POSTGRES_URL": ("postgres", "connection_string"),
    "POSTGRES_HOST": ("postgres", "host"),
    "POSTGRES_PORT": ("postgres", "port"),
    "POSTGRES_DB": ("postgres", "database"),
    "POSTGRES_USER": ("postgres", "user"),
    "POSTGRES_PASSWORD": ("postgres", "password"),
    "POSTGRES_POOL_MAX": ("postgres", "pool_max"),
    "POSTGRES_IDLE_TIMEOUT_MS": ("postgres", "idle_timeout_ms"),
    "POSTGRES_CONNECT_TIMEOUT_MS": ("postgres", "connect_timeout_ms"),
    "DB_SWITCH_DUMP_DIR": (None, "dump_dir"),
}


class EmbeddedSettings(BaseModel):
    """Embedded (SQLite file) backend."""

    sqlite_path: str = Field(default="~/.ktrain/ktrain.sqlite", description="Database file")
    busy_timeout_ms: int = Field(default=5000, ge=0, description="Lock wait before SQLITE_BUSY")


class NetworkedSettings(BaseModel):
    """Networked (PostgreSQL) backend. A connection string overrides the fields."""

    connection_string: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    pool_max: int = Field(default=20, ge=1, description="Upper bound on pooled connections")
    idle_timeout_ms: int = Field(default=30000, ge=0, description="Close pooled connections idle this long")
    connect_timeout_ms: int = Field(default=10000, ge=1000, description="libpq connect timeout")

    @property
    def configured(self) -> bool:
        return bool(self.connection_string or self.database)


class StorageSettings(BaseModel):
    backend: Literal["embedded", "networked"] = "embedded"
    sqlite: EmbeddedSettings = Field(default_factory=EmbeddedSettings)
    postgres: NetworkedSettings = Field(default_factory=NetworkedSettings)
    control_path: Optional[str] = Field(default=None, description="Control store file")
    dump_dir: Optional[str] = Field(default=None, description="Switch snapshots and audit log")

    @field_validator("backend", mode="before")
    @classmethod
    def _alias_backend(cls, v):
        if isinstance(v, str):
            return _BACKEND_ALIASES.get(v.strip().lower(), v)
        return v

    @property
    def sqlite_path(self) -> str:
        return os.path.expanduser(self.sqlite.sqlite_path)

    @property
    def control_file(self) -> str:
        return os.path.expanduser(self.control_path or self.sqlite_path + ".control")

    @property
    def dump_directory(self) -> str:
        if self.dump_dir:
            return os.path.expanduser(self.dump_dir)
        return os.path.join(os.path.dirname(os.path.abspath(self.sqlite_path)), "switch-dumps")


def load_settings(path=None, environ=None) -> StorageSettings:
    """
    Build StorageSettings from the JSON file and the environment.

    A missing file is fine (defaults + env); a malformed one, or a bad
    value from either source, raises ValidationError.
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get("KTRAIN_CONFIG") or CFG_PATH

    data = {}
    if os.path.exists(path):
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid JSON in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"{path} must hold a JSON object")
        log.debug("loaded settings from %s", path)

    for var, (section, field) in _ENV.items():
        value = environ.get(var)
        if value in (None, ""):
            continue
        target = data if section is None else data.setdefault(section, {})
        target[field] = value

    try:
        return StorageSettings.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "Invalid storage settings",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from None


def create_adapter(kind: str, settings: StorageSettings, gate=None):
    """An unopened adapter for ``kind`` ("embedded" | "networked")."""
    if kind == "embedded":
        return SQLiteAdapter(
            sqlite_path=settings.sqlite_path,
            busy_timeout_ms=settings.sqlite.busy_timeout_ms,
            gate=gate,
        )
    if kind == "networked":
        pg = settings.postgres
        if not pg.configured:
            raise ValidationError(
                "Networked backend not configured: set POSTGRES_URL or POSTGRES_DB "
                "(postgres.connection_string / postgres.database in ~/.ktrain.json)"
            )
        return PostgresAdapter(
            connection_string=pg.connection_string,
            host=pg.host,
            port=pg.port,
            database=pg.database,
            user=pg.user,
            password=pg.password,
            pool_max=pg.pool_max,
            idle_timeout=pg.idle_timeout_ms / 1000,
            connect_timeout=max(1, pg.connect_timeout_ms // 1000),
            gate=gate,
        )
    raise ValidationError(f"Unknown backend '{kind}'. Supported: embedded, networked")


def create_control_store(settings: StorageSettings, gate=None) -> SQLiteAdapter:
    return SQLiteAdapter(
        sqlite_path=settings.control_file,
        busy_timeout_ms=settings.sqlite.busy_timeout_ms,
        gate=gate,
    )

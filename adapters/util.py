"""Small helpers shared by the query mixins."""

import json
from datetime import datetime, timedelta, timezone


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return _fmt(datetime.now(timezone.utc))


def iso_ago(seconds: float) -> str:
    return _fmt(datetime.now(timezone.utc) - timedelta(seconds=seconds))


def iso_in(seconds: float) -> str:
    return _fmt(datetime.now(timezone.utc) + timedelta(seconds=seconds))


def _fmt(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_expired(value) -> bool:
    if not value:
        return True
    return parse_iso(value) < datetime.now(timezone.utc)


def dumps(value):
    """JSON-encode for a TEXT column; None stays NULL."""
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def loads(value):
    if value is None or value == "":
        return None
    return json.loads(value)


def decode(rows, *columns):
    """Decode JSON TEXT columns in place. Accepts one row, a list, or None."""
    if rows is None:
        return None
    for row in rows if isinstance(rows, list) else [rows]:
        for col in columns:
            if col in row:
                row[col] = loads(row[col])
    return rows

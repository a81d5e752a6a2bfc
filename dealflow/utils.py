"""Shared helpers: JSON payload decoding, UTC handling and the injectable clock."""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_dump(value: Any) -> str:
    return json.dumps(value if value is not None else {}, default=str)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


class Clock:
    """Wall-clock source of "now". Queue policy code never calls ``datetime.now`` directly."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock(Clock):
    """Clock that only moves when told to, for simulations and tests."""

    def __init__(self, start: datetime | None = None):
        self._now = as_utc(start) or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


SYSTEM_CLOCK = Clock()

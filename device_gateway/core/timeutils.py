"""Helpers de fechas. En BD se guardan datetimes UTC naive."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).replace(tzinfo=None)


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def as_datetime(value: Any) -> Optional[datetime]:
    """Normaliza el valor leído de BD (SQLite devuelve strings)."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))

"""Time helpers shared by the pool services."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]

DB_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    # Fixed-width text keeps lexical order equal to chronological order in SQLite.
    return ensure_utc(value).strftime(DB_TIMESTAMP_FORMAT)


def from_db_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, DB_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)

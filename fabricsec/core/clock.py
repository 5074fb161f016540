from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def canonical_timestamp(value: datetime) -> str:
    # Locale-independent, fixed-precision rendering used inside audit hashes.
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

# mulebridge/datetime_utils.py
from __future__ import annotations
from datetime import datetime, timedelta, timezone

UTC = timezone.utc


def utcnow() -> datetime:
    # Always use aware UTC
    return datetime.now(UTC)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        # naive timestamps coming back from sqlite are UTC
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso(dt: datetime) -> str:
    # Fixed width so stored timestamps sort lexically
    return to_utc(dt).isoformat(timespec="milliseconds")


def now_iso() -> str:
    return to_iso(utcnow())


def iso_ago(seconds: float = 0.0, days: float = 0.0) -> str:
    return to_iso(utcnow() - timedelta(seconds=seconds, days=days))

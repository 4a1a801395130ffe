from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(str(value)))


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def time_ago_in_words(then: datetime, now: datetime) -> str:
    """Verbose distance between two instants, e.g. ``about 2 hours``."""
    seconds = max(0, int((as_utc(now) - as_utc(then)).total_seconds()))
    minutes = round(seconds / 60)
    if seconds < 60:
        return "less than a minute"
    if minutes < 45:
        return _plural(max(1, minutes), "minute")
    if minutes < 90:
        return "about 1 hour"
    if minutes < 1440:
        return f"about {round(minutes / 60)} hours"
    if minutes < 2520:
        return "1 day"
    days = round(minutes / 1440)
    if days < 30:
        return _plural(days, "day")
    if days < 45:
        return "about 1 month"
    if days < 365:
        return _plural(round(days / 30), "month")
    years = days // 365
    remainder = days % 365
    if remainder < 91:
        return f"about {_plural(years, 'year')}"
    if remainder < 273:
        return f"over {_plural(years, 'year')}"
    return f"almost {_plural(years + 1, 'year')}"


def hours_from(now: datetime, hours: int) -> datetime:
    return as_utc(now) + timedelta(hours=hours)


def hash_token(raw: str) -> str:
    """Tokens are stored as sha256 digests; only the holder keeps the raw value."""
    return hashlib.sha256(raw.encode()).hexdigest()

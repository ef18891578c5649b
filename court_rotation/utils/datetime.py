"""Time utilities with timezone-aware defaults."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return current UTC time with tzinfo."""

    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ceil_minutes(delta: timedelta) -> int:
    """Whole minutes needed to cover ``delta``; never negative."""

    seconds = delta.total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 60)


def format_remaining(delta: timedelta) -> str:
    """Render a remaining duration as ``"<hours>h <minutes>m"``."""

    total_minutes = max(0, int(delta.total_seconds() // 60))
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m"


__all__ = ["Clock", "ceil_minutes", "ensure_utc", "format_remaining", "utc_now"]

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], float]


def utcnow() -> datetime:
    # Timestamps are stored as UTC-naive datetimes (tzinfo stripped) for SQLite + SQLAlchemy.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def utc_after(seconds: float, *, now: datetime | None = None) -> datetime:
    return (now or utcnow()) + timedelta(seconds=seconds)


def wall_clock() -> float:
    # Epoch seconds; comparable across processes sharing a store.
    return time.time()

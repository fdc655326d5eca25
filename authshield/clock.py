from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Wall clock used for window arithmetic, TTL bookkeeping and expiry checks."""

    def time(self) -> float: ...


class SystemClock:
    def time(self) -> float:
        return time.time()


def now_ms(clock: Clock) -> int:
    return int(round(clock.time() * 1000))


def now_utc(clock: Clock) -> datetime:
    return datetime.fromtimestamp(clock.time(), tz=timezone.utc)


def from_ms(value_ms: int) -> datetime:
    return datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc)


def parse_timestamp(raw: object) -> datetime | None:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)

"""Wall-clock helpers expressed in epoch milliseconds."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Protocol


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    """Reads the host wall clock."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


def to_datetime(ms: int) -> datetime:
    """Convert epoch milliseconds to a naive local datetime."""
    return datetime.fromtimestamp(ms / 1000)


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def start_of_day_ms(ms: int) -> int:
    """Return the local midnight that opens the calendar day containing ``ms``."""
    day = to_datetime(ms).replace(hour=0, minute=0, second=0, microsecond=0)
    return to_ms(day)


def iso_timestamp(ms: int) -> str:
    return to_datetime(ms).isoformat()

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol

"""Clock port.

Duplicate windows and retry schedules compare against "now"; injecting the
clock keeps both deterministic under test.
"""

__all__ = [
    "Clock",
    "SystemClock",
]


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)

"""Injectable time source.

Circuit breaker timers and entity timestamps read time through a ``Clock`` so
tests can drive them deterministically.
"""

import time
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Wall-clock time source."""

    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...

    def time(self) -> float:
        """Current time in seconds since the epoch."""
        ...


class SystemClock:
    """Clock backed by the system wall clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def time(self) -> float:
        return time.time()

"""Clock abstractions for allocation runs."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo

UTC_TZ = ZoneInfo("UTC")


class Clock(Protocol):
    """Clock abstraction for deterministic tests."""

    def now(self) -> datetime:
        """Return a timezone-aware wall-clock timestamp."""

    def monotonic(self) -> float:
        """Return a monotonic reference in seconds."""


@dataclass(slots=True)
class SystemClock:
    """Default implementation backed by stdlib clocks."""

    tz: ZoneInfo = UTC_TZ

    def now(self) -> datetime:
        return datetime.now(timezone.utc).astimezone(self.tz)

    def monotonic(self) -> float:
        return time.monotonic()


@dataclass(slots=True)
class FrozenClock:
    """Manually advanced clock; ``tick`` is added to the monotonic reading on every call."""

    fixed: datetime
    tick: float = 0.0
    _mono: float = field(default=0.0, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def now(self) -> datetime:
        with self._lock:
            return self.fixed

    def monotonic(self) -> float:
        with self._lock:
            self._mono += self.tick
            return self._mono

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.fixed += timedelta(seconds=seconds)
            self._mono += seconds


def system_clock(tz_name: str = "UTC") -> SystemClock:
    """Factory returning a system clock bound to ``tz_name``."""

    return SystemClock(ZoneInfo(tz_name))


__all__ = ["Clock", "FrozenClock", "SystemClock", "UTC_TZ", "system_clock"]

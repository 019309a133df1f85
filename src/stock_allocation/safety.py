"""Kill switch and write window guarding live stock writes.

Both flags live in Redis so every orchestrator instance sees the same value;
they are read on every check and never cached.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Protocol

from redis import Redis

from .clock import Clock
from .config import SafetyConfig
from .logging_utils import get_logger

REASON_KILL_SWITCH = "kill_switch"
REASON_BROWSE_MODE = "browse_mode"
REASON_WRITES_DISABLED = "writes_disabled"
REASON_OUTSIDE_WRITE_HOURS = "outside_write_hours"

logger = get_logger(__name__)


class KillSwitch(Protocol):
    def is_active(self) -> bool:
        ...

    def activate(self) -> None:
        ...

    def deactivate(self) -> None:
        ...


class RedisKillSwitch:
    def __init__(self, redis: Redis, *, namespace: str) -> None:
        self._redis = redis
        self._key = f"{namespace}:kill_switch"

    def is_active(self) -> bool:
        return bool(self._redis.exists(self._key))

    def activate(self) -> None:
        self._redis.set(self._key, "1")
        logger.warning("kill switch activated", extra={"ctx_key": self._key})

    def deactivate(self) -> None:
        self._redis.delete(self._key)
        logger.info("kill switch deactivated", extra={"ctx_key": self._key})


@dataclass(frozen=True)
class WindowState:
    active: bool
    remaining_seconds: int = 0


class WriteWindow:
    """Temporary override that allows live writes until its TTL expires."""

    def __init__(self, redis: Redis, *, namespace: str, default_seconds: int = 900) -> None:
        self._redis = redis
        self._key = f"{namespace}:write_window"
        self._default_seconds = default_seconds

    def open(self, seconds: int | None = None) -> WindowState:
        ttl = int(seconds or self._default_seconds)
        if ttl <= 0:
            raise ValueError("write window duration must be positive")
        self._redis.set(self._key, "1", ex=ttl)
        logger.info("write window opened", extra={"ctx_seconds": ttl})
        return WindowState(active=True, remaining_seconds=ttl)

    def close(self) -> None:
        self._redis.delete(self._key)
        logger.info("write window closed")

    def state(self) -> WindowState:
        ttl = self._redis.ttl(self._key)
        if ttl is None or ttl == -2:
            return WindowState(active=False)
        # -1: key without expiry, treated as open indefinitely
        return WindowState(active=True, remaining_seconds=max(int(ttl), 0))


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str | None = None


def _within_hours(hour: int, start: int, end: int) -> bool:
    if start == end:
        return True
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


class SafetyGate:
    def __init__(
        self,
        *,
        kill_switch: KillSwitch,
        write_window: WriteWindow,
        settings: SafetyConfig,
        clock: Clock,
    ) -> None:
        self.kill_switch = kill_switch
        self.write_window = write_window
        self._settings = settings
        self._clock = clock

    def check_writable(self) -> GateDecision:
        if self.kill_switch.is_active():
            return GateDecision(False, REASON_KILL_SWITCH)
        if self.write_window.state().active:
            return GateDecision(True)
        if self._settings.browse_mode:
            return GateDecision(False, REASON_BROWSE_MODE)
        if not self._settings.write_enabled:
            return GateDecision(False, REASON_WRITES_DISABLED)
        start, end = self._settings.write_hours_start, self._settings.write_hours_end
        if start is not None and end is not None and not _within_hours(self._clock.now().hour, start, end):
            return GateDecision(False, REASON_OUTSIDE_WRITE_HOURS)
        return GateDecision(True)

    def status(self) -> Dict[str, Any]:
        decision = self.check_writable()
        window = self.write_window.state()
        return {
            "writes_allowed": decision.allowed,
            "reason": decision.reason,
            "kill_switch_active": self.kill_switch.is_active(),
            "write_window_active": window.active,
            "write_window_remaining_seconds": window.remaining_seconds,
            "browse_mode": self._settings.browse_mode,
            "write_enabled": self._settings.write_enabled,
        }


__all__ = [
    "GateDecision",
    "KillSwitch",
    "REASON_BROWSE_MODE",
    "REASON_KILL_SWITCH",
    "REASON_OUTSIDE_WRITE_HOURS",
    "REASON_WRITES_DISABLED",
    "RedisKillSwitch",
    "SafetyGate",
    "WindowState",
    "WriteWindow",
]

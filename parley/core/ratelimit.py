"""Sliding-window rate limiting keyed by user, with optional plugin/command tags."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger()

_DEFAULT_RETENTION = 24 * 60 * 60.0  # seconds


class RateLimit(BaseModel):
    """A quota: at most ``max_points`` within the trailing ``window_seconds``."""

    model_config = ConfigDict(frozen=True)

    window_seconds: float = Field(gt=0)
    max_points: int = Field(ge=0)


class RateLimitEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    timestamp: float
    points: int = 1
    plugin_id: str | None = None
    command: str | None = None

    def matches(self, plugin_id: str | None, command: str | None) -> bool:
        if plugin_id is not None and self.plugin_id != plugin_id:
            return False
        return command is None or self.command == command


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._events: dict[str, list[RateLimitEvent]] = {}
        self._retention = _DEFAULT_RETENTION

    def record(
        self,
        user_id: str,
        points: int = 1,
        *,
        plugin_id: str | None = None,
        command: str | None = None,
    ) -> None:
        now = self._clock()
        events = self._events.setdefault(user_id, [])
        events.append(
            RateLimitEvent(
                user_id=user_id,
                timestamp=now,
                points=points,
                plugin_id=plugin_id,
                command=command,
            )
        )
        self._prune(user_id, now)

    def usage(
        self,
        user_id: str,
        window_seconds: float,
        *,
        plugin_id: str | None = None,
        command: str | None = None,
    ) -> int:
        """Points consumed by *user_id* inside the trailing window."""
        cutoff = self._clock() - window_seconds
        return sum(
            e.points
            for e in self._events.get(user_id, ())
            if e.timestamp > cutoff and e.matches(plugin_id, command)
        )

    def is_limited(
        self,
        user_id: str,
        quotas: Iterable[RateLimit],
        *,
        plugin_id: str | None = None,
        command: str | None = None,
        points: int = 1,
    ) -> bool:
        """True if spending *points* now would exceed any of *quotas*."""
        for quota in quotas:
            if quota.window_seconds > self._retention:
                self._retention = quota.window_seconds
            used = self.usage(
                user_id,
                quota.window_seconds,
                plugin_id=plugin_id,
                command=command,
            )
            if used + points > quota.max_points:
                logger.debug(
                    "rate_limit_exceeded",
                    user_id=user_id,
                    plugin_id=plugin_id,
                    command=command,
                    used=used,
                    window_seconds=quota.window_seconds,
                    max_points=quota.max_points,
                )
                return True
        return False

    def reset(self, user_id: str | None = None) -> None:
        if user_id is None:
            self._events.clear()
        else:
            self._events.pop(user_id, None)

    def _prune(self, user_id: str, now: float) -> None:
        events = self._events.get(user_id)
        if not events or now - events[0].timestamp <= self._retention:
            return
        cutoff = now - self._retention
        self._events[user_id] = [e for e in events if e.timestamp > cutoff]

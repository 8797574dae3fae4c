"""
Per-identifier rate limiting: admit / check.

Fixed window: the first request for an identifier opens a window that resets
at ``now + window``; up to ``max_requests`` are admitted inside it, the rest are
rejected immediately. Across a window boundary a caller can get up to
2 x max_requests through; that is how fixed windows behave.

In-memory only; windows whose reset time has passed are removed by sweep(),
which runs on a background thread when start() is called.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import NamedTuple

from sqlbridge.core.errors import RateLimitExceededError
from sqlbridge.core.sweeper import PeriodicTask

_log = logging.getLogger(__name__)

_SWEEP_INTERVAL_SEC = 60.0


class _Window:
    __slots__ = ("count", "reset_at", "last_request")

    def __init__(self, reset_at: float, now: float) -> None:
        self.count = 0
        self.reset_at = reset_at
        self.last_request = now


class RateLimitStatus(NamedTuple):
    remaining: int
    reset_at: float
    total_requests: int


class RateLimiter:
    """Fixed-window admission control keyed by caller identifier."""

    def __init__(
        self,
        max_requests: int,
        window_sec: float,
        *,
        enabled: bool = True,
        sweep_interval_sec: float = _SWEEP_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max(1, max_requests)
        self.window_sec = window_sec
        self.enabled = enabled
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._rejected = 0
        self._sweeper = PeriodicTask("ratelimit-sweep", sweep_interval_sec, self.sweep)

    def start(self) -> None:
        self._sweeper.start()

    def admit(self, identifier: str, operation: str | None = None) -> bool:
        """True = allow, False = over limit for the current window."""
        if not self.enabled:
            return True
        if not identifier or not isinstance(identifier, str):
            return True
        now = self._clock()
        with self._lock:
            w = self._windows.get(identifier)
            if w is None or now > w.reset_at:
                w = _Window(now + self.window_sec, now)
                self._windows[identifier] = w
            w.last_request = now
            if w.count >= self.max_requests:
                self._rejected += 1
                count, reset_at = w.count, w.reset_at
                allowed = False
            else:
                w.count += 1
                allowed = True
        if not allowed:
            _log.warning(
                "Rate limit exceeded",
                extra={
                    "identifier": identifier,
                    "operation": operation,
                    "count": count,
                    "max_requests": self.max_requests,
                    "reset_in_sec": round(reset_at - now, 3),
                },
            )
        return allowed

    def check(self, identifier: str, operation: str | None = None) -> None:
        """Like admit() but raises RateLimitExceededError on rejection."""
        if not self.admit(identifier, operation):
            raise RateLimitExceededError(
                "Rate limit exceeded. Please try again later.",
                context={"identifier": identifier, "operation": operation},
            )

    def status(self, identifier: str) -> RateLimitStatus:
        now = self._clock()
        with self._lock:
            w = self._windows.get(identifier)
            if w is None or now > w.reset_at:
                return RateLimitStatus(self.max_requests, now + self.window_sec, 0)
            return RateLimitStatus(
                max(0, self.max_requests - w.count), w.reset_at, w.count
            )

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._windows.pop(identifier, None)
        _log.info("Rate limit reset", extra={"identifier": identifier})

    def sweep(self) -> int:
        """Drop windows whose reset time has passed. Returns the number removed."""
        now = self._clock()
        with self._lock:
            dead = [k for k, w in self._windows.items() if now > w.reset_at]
            for k in dead:
                del self._windows[k]
        if dead:
            _log.debug("Rate limit cleanup", extra={"entries_removed": len(dead)})
        return len(dead)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "tracked_identifiers": len(self._windows),
                "rejected": self._rejected,
                "max_requests": self.max_requests,
            }

    def close(self) -> None:
        self._sweeper.stop()
        with self._lock:
            self._windows.clear()

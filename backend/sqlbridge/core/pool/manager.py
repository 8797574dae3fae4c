"""
Bounded connection pool with FIFO acquire, idle sweep and orderly shutdown.

Invariants (all under one Condition):
- idle + in_use + creating <= max_size
- a connection is in exactly one of idle / in_use, or closed
- waiting callers are served strictly in arrival order; a new connection is
  opened only for the head of the queue when nothing is idle

Connections are opened outside the lock. Health-check on checkout (for
connections idle longer than the ping threshold), max-lifetime eviction on
checkout and release, and a periodic idle sweep that never touches a
connection a concurrent acquire could take (both run under the same lock).
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, NamedTuple

from sqlbridge.core.errors import (
    ConnectionFailedError,
    ErrorKind,
    PoolClosedError,
    PoolExhaustedError,
    classify,
)
from sqlbridge.core.sweeper import PeriodicTask
from sqlbridge.models import PoolStats, ProductTypeEnum

from .health import health_check

_log = logging.getLogger(__name__)

_DEFAULT_MAX_AGE_SEC = 600  # 10 minutes
_PING_IDLE_THRESHOLD = 30.0  # only ping connections idle longer than this (seconds)


class _PoolEntry(NamedTuple):
    conn: Any
    created_at: float  # clock() when the connection was opened
    last_used: float  # clock() when last returned to pool


class ConnectionPool:
    """Bounded pool of DB-API connections produced by ``connect_fn``."""

    def __init__(
        self,
        connect_fn: Callable[[], Any],
        *,
        min_size: int = 0,
        max_size: int = 10,
        acquire_timeout: float = 60.0,
        idle_timeout: float = 30.0,
        max_lifetime: float = _DEFAULT_MAX_AGE_SEC,
        reap_interval: float = 1.0,
        ping_threshold: float = _PING_IDLE_THRESHOLD,
        product_type: ProductTypeEnum | None = None,
        on_connect: Callable[[Any], None] | None = None,
        on_remove: Callable[[Any], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if min_size > max_size:
            raise ValueError("Pool min connections cannot be greater than max connections")
        self._connect_fn = connect_fn
        self.min_size = min_size
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self.idle_timeout = idle_timeout
        self.max_lifetime = max_lifetime
        self.ping_threshold = ping_threshold
        self.product_type = product_type
        self._on_connect = on_connect
        self._on_remove = on_remove
        self._clock = clock

        self._cond = threading.Condition()
        self._idle: deque[_PoolEntry] = deque()
        self._in_use: dict[int, _PoolEntry] = {}
        self._waiters: deque[object] = deque()
        self._creating = 0
        self._closing = False
        self._closed = False
        self._sweeper = PeriodicTask("pool-sweep", reap_interval, self._sweep_tick)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Open ``min_size`` connections and start the idle sweeper."""
        self.prefill()
        self._sweeper.start()
        _log.info(
            "Connection pool created",
            extra={"min": self.min_size, "max": self.max_size},
        )

    def prefill(self) -> int:
        """Open connections until total reaches min_size. Returns how many were opened."""
        opened = 0
        while True:
            with self._cond:
                if self._closing or self._total() >= self.min_size:
                    return opened
                self._creating += 1
            try:
                conn = self._connect_fn()
            except Exception:
                with self._cond:
                    self._creating -= 1
                    self._cond.notify_all()
                _log.warning("Prefill connection failed", exc_info=True)
                return opened
            now = self._clock()
            with self._cond:
                self._creating -= 1
                if self._closing:
                    stray = True
                else:
                    stray = False
                    self._idle.appendleft(_PoolEntry(conn, now, now))
                    self._cond.notify_all()
            self._connected(conn)
            if stray:
                self._close_conn(conn)
                return opened
            opened += 1

    def shutdown(self, timeout: float | None = None) -> None:
        """
        Reject new acquires, let queued ones finish or time out, close idle
        connections. Connections still checked out are closed on release.
        Idempotent.
        """
        wait = self.acquire_timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        with self._cond:
            if self._closed:
                return
            self._closing = True
            self._cond.notify_all()
            while self._waiters or self._creating:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            in_use = len(self._in_use)
            self._cond.notify_all()
        self._sweeper.stop()
        for entry in idle:
            self._close_conn(entry.conn)
        _log.info(
            "Connection pool closed",
            extra={"closed_idle": len(idle), "still_in_use": in_use},
        )

    @property
    def closed(self) -> bool:
        return self._closing

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self, timeout: float | None = None) -> Any:
        """
        Check out a connection, waiting in FIFO order up to ``timeout`` seconds
        (default: acquire_timeout). Raises PoolExhaustedError on timeout and
        PoolClosedError once shutdown has begun.
        """
        wait = self.acquire_timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        while True:
            entry = self._checkout(deadline)
            if entry is None:
                return self._create()
            if self._usable(entry):
                _log.debug("Connection acquired")
                return entry.conn
            self.release(entry.conn, discard=True)

    def release(self, conn: Any, *, discard: bool = False) -> None:
        """Return a connection (or close it when ``discard`` or the pool is closed)."""
        with self._cond:
            known = id(conn) in self._in_use
        if not known:
            _log.warning("Release of a connection not checked out from this pool")
            return

        if not discard:
            try:
                conn.rollback()
            except Exception:
                discard = True

        close = False
        with self._cond:
            entry = self._in_use.pop(id(conn), None)
            if entry is None:
                return
            if discard or self._closed or self._lifetime_exceeded(entry):
                close = True
            else:
                self._idle.append(entry._replace(last_used=self._clock()))
            self._cond.notify_all()
        if close:
            self._close_conn(conn)
        else:
            _log.debug("Connection released")

    @contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[Any]:
        """``with pool.connection() as conn:`` acquire, always release."""
        conn = self.acquire(timeout)
        try:
            yield conn
        finally:
            self.release(conn)

    # ------------------------------------------------------------------
    # Sweep / stats
    # ------------------------------------------------------------------

    def sweep_idle(self) -> int:
        """Close idle connections past idle_timeout or max_lifetime, keeping min_size."""
        now = self._clock()
        removed: list[_PoolEntry] = []
        with self._cond:
            total = self._total()
            keep: deque[_PoolEntry] = deque()
            for entry in self._idle:
                stale = self.idle_timeout > 0 and (now - entry.last_used) >= self.idle_timeout
                old = (now - entry.created_at) > self.max_lifetime
                if (stale or old) and total > self.min_size:
                    removed.append(entry)
                    total -= 1
                else:
                    keep.append(entry)
            self._idle = keep
        for entry in removed:
            self._close_conn(entry.conn)
        if removed:
            _log.debug("Idle sweep", extra={"connections_removed": len(removed)})
        return len(removed)

    def stats(self) -> PoolStats:
        """Advisory snapshot; never use it to make allocation decisions."""
        with self._cond:
            return PoolStats(
                total=self._total(),
                idle=len(self._idle),
                in_use=len(self._in_use),
                waiting=len(self._waiters),
                min=self.min_size,
                max=self.max_size,
                idle_timeout_ms=int(self.idle_timeout * 1000),
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _total(self) -> int:
        return len(self._idle) + len(self._in_use) + self._creating

    def _checkout(self, deadline: float) -> _PoolEntry | None:
        """Return an idle entry (moved to in_use) or None when the caller should create one."""
        with self._cond:
            if self._closing:
                raise PoolClosedError("Connection pool is closed")
            ticket = object()
            self._waiters.append(ticket)
            try:
                while True:
                    if self._closed:
                        raise PoolClosedError("Connection pool is closed")
                    if self._waiters[0] is ticket:
                        if self._idle:
                            entry = self._idle.pop()
                            self._in_use[id(entry.conn)] = entry
                            return entry
                        if self._total() < self.max_size:
                            self._creating += 1
                            return None
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise PoolExhaustedError(
                            "Timed out waiting for a database connection",
                            context={
                                "max": self.max_size,
                                "in_use": len(self._in_use),
                                "waiting": len(self._waiters),
                            },
                        )
                    self._cond.wait(remaining)
            finally:
                self._waiters.remove(ticket)
                self._cond.notify_all()

    def _create(self) -> Any:
        try:
            conn = self._connect_fn()
        except Exception as e:
            with self._cond:
                self._creating -= 1
                self._cond.notify_all()
            _log.error("Failed to open database connection: %s", e, exc_info=True)
            err = classify(e)
            if err.kind == ErrorKind.INTERNAL:
                err = ConnectionFailedError(f"Database connection failed: {e}")
            raise err from e
        now = self._clock()
        with self._cond:
            self._creating -= 1
            if self._closed:
                stray = True
            else:
                stray = False
                self._in_use[id(conn)] = _PoolEntry(conn, now, now)
            self._cond.notify_all()
        self._connected(conn)
        if stray:
            self._close_conn(conn)
            raise PoolClosedError("Connection pool is closed")
        return conn

    def _usable(self, entry: _PoolEntry) -> bool:
        if self._lifetime_exceeded(entry):
            return False
        idle_sec = self._clock() - entry.last_used
        if idle_sec > self.ping_threshold and not health_check(entry.conn, self.product_type):
            _log.info("Dropping dead pooled connection")
            return False
        return True

    def _lifetime_exceeded(self, entry: _PoolEntry) -> bool:
        return (self._clock() - entry.created_at) > self.max_lifetime

    def _sweep_tick(self) -> None:
        self.sweep_idle()
        if not self._closing:
            self.prefill()

    def _connected(self, conn: Any) -> None:
        _log.info("Database connection opened")
        if self._on_connect is not None:
            self._on_connect(conn)

    def _close_conn(self, conn: Any) -> None:
        try:
            conn.close()
        except Exception:
            pass
        _log.info("Database connection removed")
        if self._on_remove is not None:
            self._on_remove(conn)

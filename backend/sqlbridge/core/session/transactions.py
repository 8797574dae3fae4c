"""
Transaction registry: opaque transaction id -> TransactionContext holding an
exclusively owned pooled connection.

A transaction begun by one call is continued and finished by later,
independent calls. Each context carries a lock, so statements on the same id
run strictly one after another; a second caller waits up to ``lock_timeout``
and then gets a TIMEOUT error.

commit / rollback always deregister the context and release its connection,
whatever the directive did. Deregistration happens first so that the
connection can never be acquired by someone else while the id still resolves.
"""

import logging
import threading
import time
import uuid
from collections.abc import Callable
from typing import Any

from sqlbridge.core.errors import (
    PermissionDeniedError,
    PoolClosedError,
    StatementTimeoutError,
    TransactionNotFoundError,
)
from sqlbridge.core.pool import ConnectionPool, apply_statement_timeout, begin_directive, run_query
from sqlbridge.core.pool.connect import COMMIT, ROLLBACK, run_directive
from sqlbridge.core.sql import is_write_operation
from sqlbridge.models import ProductTypeEnum, QueryResult, TransactionStateEnum

_log = logging.getLogger(__name__)


class TransactionContext:
    """One open transaction. ``connection`` belongs to this context alone."""

    __slots__ = ("id", "connection", "start_time", "read_only", "state", "lock")

    def __init__(self, id: str, connection: Any, start_time: float, read_only: bool) -> None:
        self.id = id
        self.connection = connection
        self.start_time = start_time
        self.read_only = read_only
        self.state = TransactionStateEnum.ACTIVE
        self.lock = threading.Lock()

    def __repr__(self) -> str:
        return f"TransactionContext(id={self.id!r}, read_only={self.read_only}, state={self.state.value})"


class TransactionRegistry:
    def __init__(
        self,
        pool: ConnectionPool,
        product_type: ProductTypeEnum,
        *,
        lock_timeout: float = 60.0,
        max_age: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pool = pool
        self._product_type = product_type
        self._lock_timeout = lock_timeout
        self._max_age = max_age
        self._clock = clock
        self._contexts: dict[str, TransactionContext] = {}
        self._lock = threading.Lock()
        self._closing = False

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, transaction_id: str) -> TransactionContext | None:
        with self._lock:
            return self._contexts.get(transaction_id)

    def get(self, transaction_id: str) -> TransactionContext:
        ctx = self.lookup(transaction_id)
        if ctx is None:
            raise TransactionNotFoundError(transaction_id)
        return ctx

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._contexts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def __contains__(self, transaction_id: object) -> bool:
        with self._lock:
            return transaction_id in self._contexts

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin(self, read_only: bool = False, *, timeout_ms: int | None = None) -> str:
        """
        Acquire a connection, issue BEGIN (READ ONLY), register and return the new id.

        A begin still in flight when drain() runs is not registered: its
        connection is discarded and PoolClosedError is raised.
        """
        with self._lock:
            if self._closing:
                raise PoolClosedError("Transaction registry is closed")
        conn = self._pool.acquire()
        try:
            if timeout_ms:
                apply_statement_timeout(conn, self._product_type, timeout_ms)
            run_directive(conn, begin_directive(self._product_type, read_only))
        except Exception:
            self._pool.release(conn, discard=True)
            raise
        ctx = TransactionContext(uuid.uuid4().hex, conn, self._clock(), read_only)
        with self._lock:
            closing = self._closing
            if not closing:
                self._contexts[ctx.id] = ctx
                active = len(self._contexts)
        if closing:
            self._pool.release(conn, discard=True)
            raise PoolClosedError("Transaction registry is closed")
        _log.info(
            "Transaction started",
            extra={"transaction_id": ctx.id, "read_only": read_only, "active_transactions": active},
        )
        return ctx.id

    def query(
        self,
        transaction_id: str,
        sql: str,
        params: dict | list | tuple | None = None,
    ) -> QueryResult:
        ctx = self.get(transaction_id)
        if ctx.read_only and is_write_operation(sql):
            raise PermissionDeniedError(
                "Write operations are not allowed in read-only transactions",
                context={"transaction_id": transaction_id},
            )
        with self._hold(ctx):
            return run_query(ctx.connection, sql, params, product_type=self._product_type)

    def commit(self, transaction_id: str) -> None:
        self._finish(transaction_id, COMMIT, TransactionStateEnum.COMMITTED)

    def rollback(self, transaction_id: str) -> None:
        self._finish(transaction_id, ROLLBACK, TransactionStateEnum.ROLLED_BACK)

    def reap_expired(self) -> int:
        """Roll back transactions older than max_age. Returns how many were reaped."""
        if self._max_age is None:
            return 0
        now = self._clock()
        with self._lock:
            expired = [
                ctx.id for ctx in self._contexts.values() if (now - ctx.start_time) > self._max_age
            ]
        reaped = 0
        for tid in expired:
            try:
                self.rollback(tid)
                reaped += 1
            except TransactionNotFoundError:
                continue
            except Exception:
                _log.exception("Failed to roll back expired transaction", extra={"transaction_id": tid})
        if reaped:
            _log.warning("Expired transactions rolled back", extra={"count": reaped})
        return reaped

    def drain(self) -> int:
        """
        Roll back every registered transaction (best effort; failures are
        logged), release each connection and clear the registry. Later
        begin() calls are refused.
        """
        with self._lock:
            self._closing = True
        rolled_back = 0
        for tid in self.active_ids():
            try:
                self.rollback(tid)
                rolled_back += 1
                _log.info("Transaction cleaned up", extra={"transaction_id": tid})
            except TransactionNotFoundError:
                continue
            except Exception:
                _log.exception("Transaction cleanup failed", extra={"transaction_id": tid})

        with self._lock:
            leftovers = list(self._contexts.values())
            self._contexts.clear()
        for ctx in leftovers:
            ctx.state = TransactionStateEnum.ROLLED_BACK
            self._pool.release(ctx.connection, discard=True)
        return rolled_back

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _hold(self, ctx: TransactionContext) -> "_ContextHold":
        return _ContextHold(ctx, self._lock_timeout)

    def _finish(self, transaction_id: str, directive: str, final: TransactionStateEnum) -> None:
        ctx = self.get(transaction_id)
        with self._hold(ctx):
            discard = False
            try:
                run_directive(ctx.connection, directive)
            except Exception:
                discard = True
                raise
            finally:
                ctx.state = final if not discard else TransactionStateEnum.ROLLED_BACK
                with self._lock:
                    self._contexts.pop(transaction_id, None)
                self._pool.release(ctx.connection, discard=discard)
                _log.info(
                    "Transaction %s",
                    "committed" if ctx.state is TransactionStateEnum.COMMITTED else "rolled back",
                    extra={
                        "transaction_id": transaction_id,
                        "duration_ms": round((self._clock() - ctx.start_time) * 1000, 2),
                        "directive_failed": discard,
                    },
                )


class _ContextHold:
    """Take the context lock (bounded wait) and require the context still be ACTIVE."""

    __slots__ = ("_ctx", "_timeout")

    def __init__(self, ctx: TransactionContext, timeout: float) -> None:
        self._ctx = ctx
        self._timeout = timeout

    def __enter__(self) -> TransactionContext:
        if not self._ctx.lock.acquire(timeout=self._timeout):
            raise StatementTimeoutError(
                f"Transaction {self._ctx.id} is busy with another statement",
                context={"transaction_id": self._ctx.id},
            )
        if self._ctx.state is not TransactionStateEnum.ACTIVE:
            self._ctx.lock.release()
            raise TransactionNotFoundError(self._ctx.id)
        return self._ctx

    def __exit__(self, *exc: object) -> None:
        self._ctx.lock.release()

"""
Session manager: the façade the dispatch layer calls.

Composes the connection pool, the transaction registry, the result cache and
the rate limiter, all injected at construction. Driver failures are classified
here, once, and re-raised as DatabaseError.

One-shot query: acquire -> SET timeout -> statement -> release (always).
Transactions: begin -> N x query_in_transaction -> commit | rollback.
cleanup(): roll back every open transaction, then shut the pool down.
"""

import logging
import threading
from typing import Any, NoReturn

from sqlbridge.core.errors import (
    DatabaseError,
    PermissionDeniedError,
    PoolClosedError,
    classify,
)
from sqlbridge.core.gateway import QueryResultCache, RateLimiter, fingerprint, is_cacheable
from sqlbridge.core.performance import PerformanceMonitor, monitored
from sqlbridge.core.pool import ConnectionPool, run_query
from sqlbridge.core.sql import is_write_operation, normalize_sql
from sqlbridge.core.sweeper import PeriodicTask
from sqlbridge.models import (
    OperationalStats,
    PoolStats,
    ProductTypeEnum,
    QueryOptions,
    QueryResult,
)

from .transactions import TransactionRegistry

_log = logging.getLogger(__name__)

_EMA_ALPHA = 0.1
_SQL_LOG_MAX = 100


class OperationalCounters:
    """Process-wide running totals; every update is atomic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total_queries = 0
        self.total_errors = 0
        self.total_transactions = 0
        self.average_query_time_ms = 0.0
        self.connection_count = 0

    def query_done(self, duration_ms: float) -> None:
        with self._lock:
            self.total_queries += 1
            if self.average_query_time_ms == 0:
                self.average_query_time_ms = duration_ms
            else:
                self.average_query_time_ms = (
                    (1 - _EMA_ALPHA) * self.average_query_time_ms + _EMA_ALPHA * duration_ms
                )

    def error(self) -> None:
        with self._lock:
            self.total_errors += 1

    def transaction_started(self) -> None:
        with self._lock:
            self.total_transactions += 1

    def connection_opened(self, _conn: Any = None) -> None:
        with self._lock:
            self.connection_count += 1

    def connection_removed(self, _conn: Any = None) -> None:
        with self._lock:
            self.connection_count -= 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_queries": self.total_queries,
                "total_errors": self.total_errors,
                "total_transactions": self.total_transactions,
                "average_query_time_ms": round(self.average_query_time_ms, 2),
                "connection_count": self.connection_count,
            }


class SessionManager:
    def __init__(
        self,
        pool: ConnectionPool,
        transactions: TransactionRegistry,
        *,
        product_type: ProductTypeEnum,
        default_timeout_ms: int = 30_000,
        cache: QueryResultCache | None = None,
        rate_limiter: RateLimiter | None = None,
        counters: OperationalCounters | None = None,
        monitor: PerformanceMonitor | None = None,
        read_only_mode: bool = False,
        sql_logging: bool = False,
        reap_interval_sec: float = 30.0,
    ) -> None:
        self._pool = pool
        self._transactions = transactions
        self._product_type = product_type
        self._default_timeout_ms = default_timeout_ms
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._counters = counters or OperationalCounters()
        self._monitor = monitor
        self._read_only_mode = read_only_mode
        self._sql_logging = sql_logging
        self._reaper = PeriodicTask("session-reaper", reap_interval_sec, self._reap)
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def counters(self) -> OperationalCounters:
        return self._counters

    def start(self) -> None:
        """Fill the pool to its minimum and start background sweepers."""
        self._pool.start()
        if self._rate_limiter is not None:
            self._rate_limiter.start()
        self._reaper.start()

    # ------------------------------------------------------------------
    # One-shot query
    # ------------------------------------------------------------------

    def query(
        self,
        sql: str,
        params: dict | list | tuple | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Run one statement on a connection held only for its duration."""
        opts = options or QueryOptions()
        try:
            self._ensure_open()
            if (self._read_only_mode or opts.read_only) and is_write_operation(sql):
                raise PermissionDeniedError(
                    "Write operations are not allowed in read-only mode"
                )

            key = None
            if self._cache is not None and opts.use_cache and is_cacheable(sql):
                key = fingerprint(sql, params, opts)
                cached = self._cache.get_by_key(key)
                if cached is not None:
                    return cached.model_copy(deep=True)

            timeout_ms = opts.timeout_ms or self._default_timeout_ms
            result = monitored(
                self._monitor, "query", lambda: self._run_one_shot(sql, params, timeout_ms)
            )
        except Exception as e:
            self._fail(e, sql=sql)

        self._counters.query_done(result.duration_ms)
        self._log_sql(sql, params, result.duration_ms)
        if key is not None:
            self._cache.set_by_key(key, result.model_copy(deep=True))  # type: ignore[union-attr]
        return result

    def _run_one_shot(
        self, sql: str, params: dict | list | tuple | None, timeout_ms: int
    ) -> QueryResult:
        conn = self._pool.acquire()
        try:
            return run_query(
                conn, sql, params, product_type=self._product_type, timeout_ms=timeout_ms
            )
        finally:
            self._pool.release(conn)

    def test_connection(self) -> bool:
        try:
            result = self.query("SELECT 1 AS test", options=QueryOptions(use_cache=False))
        except DatabaseError:
            _log.error("Connection test failed", exc_info=True)
            return False
        return bool(result.rows) and result.rows[0].get("test") == 1

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def begin_transaction(self, read_only: bool = False) -> str:
        try:
            self._ensure_open()
            if not read_only and self._read_only_mode:
                raise PermissionDeniedError(
                    "Write transactions are not allowed in read-only mode"
                )
            tid = self._transactions.begin(read_only, timeout_ms=self._default_timeout_ms)
        except Exception as e:
            self._fail(e, read_only=read_only)
        self._counters.transaction_started()
        return tid

    def query_in_transaction(
        self,
        transaction_id: str,
        sql: str,
        params: dict | list | tuple | None = None,
    ) -> QueryResult:
        try:
            result = monitored(
                self._monitor,
                "query_in_transaction",
                lambda: self._transactions.query(transaction_id, sql, params),
            )
        except Exception as e:
            self._fail(e, transaction_id=transaction_id, sql=sql)
        self._counters.query_done(result.duration_ms)
        self._log_sql(sql, params, result.duration_ms)
        return result

    def commit_transaction(self, transaction_id: str) -> None:
        try:
            monitored(self._monitor, "commit", lambda: self._transactions.commit(transaction_id))
        except Exception as e:
            self._fail(e, transaction_id=transaction_id)

    def rollback_transaction(self, transaction_id: str) -> None:
        try:
            monitored(self._monitor, "rollback", lambda: self._transactions.rollback(transaction_id))
        except Exception as e:
            self._fail(e, transaction_id=transaction_id)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_pool_stats(self) -> PoolStats:
        return self._pool.stats()

    def get_operational_stats(self) -> OperationalStats:
        return OperationalStats(
            **self._counters.snapshot(),
            active_transactions=len(self._transactions),
            pool=self._pool.stats(),
            cache=self._cache.stats() if self._cache is not None else None,
            rate_limiter=self._rate_limiter.stats() if self._rate_limiter is not None else None,
        )

    # ------------------------------------------------------------------
    # Cache / rate limiter pass-throughs
    # ------------------------------------------------------------------

    def cache_get(self, sql: str, params: Any = None, options: Any = None) -> Any | None:
        if self._cache is None:
            return None
        return self._cache.get(sql, params, options)

    def cache_set(self, sql: str, data: Any, params: Any = None, options: Any = None) -> None:
        if self._cache is not None:
            self._cache.set(sql, data, params, options)

    def cache_invalidate(self, pattern: str | None = None) -> int:
        if self._cache is None:
            return 0
        return self._cache.invalidate(pattern)

    def cache_invalidate_table(self, table_name: str, schema_name: str = "public") -> int:
        if self._cache is None:
            return 0
        return self._cache.invalidate_table(table_name, schema_name)

    def rate_limit_admit(self, identifier: str, operation: str | None = None) -> bool:
        if self._rate_limiter is None:
            return True
        return self._rate_limiter.admit(identifier, operation)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def cleanup(self) -> None:
        """Roll back open transactions, stop sweepers, close the pool. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._reaper.stop()
        rolled_back = self._transactions.drain()
        if self._rate_limiter is not None:
            self._rate_limiter.close()
        self._pool.shutdown()
        _log.info("Session manager closed", extra={"transactions_rolled_back": rolled_back})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise PoolClosedError("Session manager is closed")

    def _reap(self) -> None:
        """Roll back expired transactions and drop expired cache entries."""
        self._transactions.reap_expired()
        if self._cache is not None:
            self._cache.purge_expired()

    def _fail(self, exc: Exception, **context: Any) -> NoReturn:
        self._counters.error()
        err = classify(exc)
        if "sql" in context:
            context["sql"] = context["sql"][:_SQL_LOG_MAX]
        _log.error(
            "Operation failed: %s", err.message, extra={"kind": err.kind.value, **context}
        )
        if err is exc:
            raise err
        raise err from exc

    def _log_sql(self, sql: str, params: Any, duration_ms: float) -> None:
        if self._sql_logging:
            _log.debug(
                "SQL Query executed",
                extra={
                    "sql": normalize_sql(sql),
                    "params": params or None,
                    "duration_ms": round(duration_ms, 2),
                },
            )

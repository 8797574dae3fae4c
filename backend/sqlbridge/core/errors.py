"""
Error taxonomy, driver-error classification and retry policy.

Driver failures (psycopg, pymysql) are classified once at the session boundary
into a DatabaseError carrying a stable ErrorKind. Only CONNECTION_FAILED,
TIMEOUT and POOL_EXHAUSTED are retryable, and only through run_with_retry.
"""

import logging
import random
import time
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

import psycopg
import pymysql

_log = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    CONNECTION_FAILED = "CONNECTION_FAILED"
    TIMEOUT = "TIMEOUT"
    POOL_EXHAUSTED = "POOL_EXHAUSTED"
    INVALID_STATEMENT = "INVALID_STATEMENT"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    INTERNAL = "INTERNAL"


_RETRYABLE = frozenset(
    {ErrorKind.CONNECTION_FAILED, ErrorKind.TIMEOUT, ErrorKind.POOL_EXHAUSTED}
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DatabaseError(Exception):
    """Base error: stable ``kind`` + human message + optional context."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "kind": self.kind.value,
            "message": self.message,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value}: {self.message!r})"


class ConnectionFailedError(DatabaseError):
    kind = ErrorKind.CONNECTION_FAILED


class StatementTimeoutError(DatabaseError):
    kind = ErrorKind.TIMEOUT


class PoolExhaustedError(DatabaseError):
    """Acquire timed out while every connection was checked out."""

    kind = ErrorKind.POOL_EXHAUSTED


class PoolClosedError(DatabaseError):
    """Acquire attempted after shutdown; not retryable."""

    kind = ErrorKind.INTERNAL


class InvalidStatementError(DatabaseError):
    kind = ErrorKind.INVALID_STATEMENT


class PermissionDeniedError(DatabaseError):
    kind = ErrorKind.PERMISSION_DENIED


class NotFoundError(DatabaseError):
    kind = ErrorKind.NOT_FOUND


class TransactionNotFoundError(NotFoundError):
    """Unknown, committed, rolled back or expired transaction id."""

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            f"Transaction {transaction_id} not found or already closed",
            context={"transaction_id": transaction_id},
        )
        self.transaction_id = transaction_id


class RateLimitExceededError(DatabaseError):
    kind = ErrorKind.RATE_LIMIT_EXCEEDED


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_PG_SQLSTATE: dict[str, type[DatabaseError]] = {
    "28P01": PermissionDeniedError,  # invalid_password
    "28000": PermissionDeniedError,  # invalid_authorization_specification
    "42501": PermissionDeniedError,  # insufficient_privilege
    "25006": PermissionDeniedError,  # read_only_sql_transaction
    "3D000": NotFoundError,  # invalid_catalog_name
    "3F000": NotFoundError,  # invalid_schema_name
    "42P01": NotFoundError,  # undefined_table
    "42601": InvalidStatementError,  # syntax_error
    "57014": StatementTimeoutError,  # query_canceled
    "53300": PoolExhaustedError,  # too_many_connections
}

_PG_CLASS: dict[str, type[DatabaseError]] = {
    "08": ConnectionFailedError,
    "42": InvalidStatementError,
    "22": InvalidStatementError,
    "57": ConnectionFailedError,
}

_MYSQL_ERRNO: dict[int, type[DatabaseError]] = {
    1044: PermissionDeniedError,
    1045: PermissionDeniedError,
    1142: PermissionDeniedError,
    1792: PermissionDeniedError,  # read-only transaction
    1049: NotFoundError,
    1146: NotFoundError,
    1064: InvalidStatementError,
    3024: StatementTimeoutError,  # max_execution_time exceeded
    1040: PoolExhaustedError,  # too many connections
    2002: ConnectionFailedError,
    2003: ConnectionFailedError,
    2006: ConnectionFailedError,
    2013: ConnectionFailedError,
}


def _from_psycopg(exc: psycopg.Error) -> DatabaseError:
    code = getattr(exc, "sqlstate", None) or ""
    cls = _PG_SQLSTATE.get(code) or _PG_CLASS.get(code[:2])
    if cls is None:
        if isinstance(exc, psycopg.OperationalError) and not code:
            cls = ConnectionFailedError
        else:
            cls = DatabaseError
    message = str(exc).strip() or "Database operation failed"
    return cls(message, context={"sqlstate": code} if code else None)


def _from_pymysql(exc: pymysql.Error) -> DatabaseError:
    errno = exc.args[0] if exc.args and isinstance(exc.args[0], int) else None
    cls = _MYSQL_ERRNO.get(errno) if errno is not None else None
    if cls is None:
        if isinstance(exc, pymysql.err.ProgrammingError):
            cls = InvalidStatementError
        elif isinstance(exc, pymysql.err.OperationalError):
            cls = ConnectionFailedError
        else:
            cls = DatabaseError
    message = str(exc.args[1]) if len(exc.args) > 1 else str(exc)
    return cls(message or "Database operation failed", context={"errno": errno} if errno else None)


def classify(exc: BaseException) -> DatabaseError:
    """Map any exception onto the taxonomy. DatabaseError passes through."""
    if isinstance(exc, DatabaseError):
        return exc
    if isinstance(exc, psycopg.Error):
        err = _from_psycopg(exc)
    elif isinstance(exc, pymysql.Error):
        err = _from_pymysql(exc)
    elif isinstance(exc, TimeoutError):
        err = StatementTimeoutError(str(exc) or "Operation timed out")
    elif isinstance(exc, ConnectionError):
        err = ConnectionFailedError(str(exc) or "Database connection failed")
    else:
        err = DatabaseError(str(exc) or "An unexpected error occurred")
    err.__cause__ = exc
    return err


def is_retryable(kind_or_error: ErrorKind | BaseException) -> bool:
    if isinstance(kind_or_error, ErrorKind):
        return kind_or_error in _RETRYABLE
    if isinstance(kind_or_error, DatabaseError):
        return kind_or_error.kind in _RETRYABLE
    return False


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


def retry_delay(
    attempt: int,
    base_ms: float = 1000,
    cap_ms: float = 30000,
    jitter: float = 0.1,
) -> float:
    """Backoff in ms before the attempt after ``attempt``: min(base*2^(n-1)*(1+j), cap)."""
    delay = base_ms * (2 ** max(attempt - 1, 0))
    delay *= 1 + random.random() * jitter
    return min(delay, cap_ms)


def run_with_retry(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay_ms: float = 1000,
    cap_ms: float = 30000,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """
    Call ``operation`` until it succeeds, retrying only retryable failures.

    Every failure is classified; the final attempt or a non-retryable kind
    re-raises the classified error immediately.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as e:
            err = classify(e)
            if attempt >= max_attempts or not is_retryable(err):
                if err is e:
                    raise
                raise err from e
            delay_ms = retry_delay(attempt, base_delay_ms, cap_ms)
            _log.warning(
                "Retryable failure (%s), attempt %d/%d, retrying in %.0fms",
                err.kind.value,
                attempt,
                max_attempts,
                delay_ms,
            )
            sleep(delay_ms / 1000.0)
            attempt += 1

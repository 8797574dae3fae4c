"""
Caller-side helpers over SessionManager.

- execute_query: one-shot query wrapped in the explicit retry policy.
- execute_transaction: begin -> every statement in order -> commit; on the
  first failure roll back and re-raise. Each statement result keeps its own
  duration.
"""

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, Field

from sqlbridge.core.config import settings
from sqlbridge.core.errors import DatabaseError, run_with_retry
from sqlbridge.core.session import SessionManager
from sqlbridge.models import QueryOptions, QueryResult

_log = logging.getLogger(__name__)


class Statement(BaseModel):
    """One statement of a multi-statement transaction."""

    sql: str = Field(..., min_length=1)
    parameters: list[Any] | dict[str, Any] | None = None


def execute_query(
    manager: SessionManager,
    sql: str,
    params: dict | list | tuple | None = None,
    options: QueryOptions | None = None,
    *,
    max_attempts: int | None = None,
    base_delay_ms: float | None = None,
    max_delay_ms: float | None = None,
) -> QueryResult:
    """
    One-shot query; CONNECTION_FAILED / TIMEOUT / POOL_EXHAUSTED are retried with
    backoff. Unset retry arguments fall back to the RETRY_* settings.
    """
    return run_with_retry(
        lambda: manager.query(sql, params, options),
        max_attempts=max_attempts or settings.RETRY_MAX_ATTEMPTS,
        base_delay_ms=settings.RETRY_BASE_DELAY_MS if base_delay_ms is None else base_delay_ms,
        cap_ms=settings.RETRY_MAX_DELAY_MS if max_delay_ms is None else max_delay_ms,
    )


def execute_transaction(
    manager: SessionManager,
    statements: Sequence[Statement | dict[str, Any]],
    *,
    read_only: bool = False,
) -> list[QueryResult]:
    """
    Run ``statements`` in one transaction and return their results in order.

    The transaction is rolled back when any statement fails; a failing
    rollback is logged and the statement error is what propagates.
    """
    stmts = [s if isinstance(s, Statement) else Statement.model_validate(s) for s in statements]
    tid = manager.begin_transaction(read_only)
    results: list[QueryResult] = []
    try:
        for stmt in stmts:
            results.append(manager.query_in_transaction(tid, stmt.sql, stmt.parameters))
    except Exception:
        try:
            manager.rollback_transaction(tid)
        except DatabaseError:
            _log.warning("Rollback after failed statement also failed", exc_info=True)
        raise
    manager.commit_transaction(tid)
    return results

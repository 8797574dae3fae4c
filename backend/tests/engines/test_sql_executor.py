"""Unit tests for engines.sql.executor: execute_query retry and execute_transaction."""

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from sqlbridge.core.errors import (
    ConnectionFailedError,
    InvalidStatementError,
    PermissionDeniedError,
    PoolExhaustedError,
)
from sqlbridge.core.pool import ConnectionPool
from sqlbridge.core.session import SessionManager, TransactionRegistry
from sqlbridge.engines.sql import Statement, execute_query, execute_transaction
from sqlbridge.models import ProductTypeEnum, QueryResult
from tests.utils.driver import FakeDriver


def _manager(driver: FakeDriver) -> tuple[SessionManager, ConnectionPool]:
    pool = ConnectionPool(driver, max_size=2, acquire_timeout=1.0)
    registry = TransactionRegistry(pool, ProductTypeEnum.POSTGRES, lock_timeout=0.2)
    return SessionManager(pool, registry, product_type=ProductTypeEnum.POSTGRES), pool


# --- execute_query ---


def test_execute_query_retries_transient_failures() -> None:
    manager = MagicMock()
    ok = QueryResult(rows=[{"n": 1}], row_count=1, command="SELECT")
    manager.query.side_effect = [ConnectionFailedError("down"), PoolExhaustedError("full"), ok]
    out = execute_query(manager, "SELECT 1 AS n", max_attempts=3, base_delay_ms=0)
    assert out is ok
    assert manager.query.call_count == 3


def test_execute_query_does_not_retry_invalid_statement() -> None:
    manager = MagicMock()
    manager.query.side_effect = InvalidStatementError("syntax error")
    with pytest.raises(InvalidStatementError):
        execute_query(manager, "SELEC 1", max_attempts=5, base_delay_ms=0)
    assert manager.query.call_count == 1


def test_execute_query_gives_up_after_max_attempts() -> None:
    manager = MagicMock()
    manager.query.side_effect = ConnectionFailedError("down")
    with pytest.raises(ConnectionFailedError):
        execute_query(manager, "SELECT 1", max_attempts=2, base_delay_ms=0)
    assert manager.query.call_count == 2


# --- execute_transaction ---


def test_execute_transaction_commits_in_order() -> None:
    driver = FakeDriver({"SELECT": [{"total": 3}]})
    manager, pool = _manager(driver)
    results = execute_transaction(
        manager,
        [
            {"sql": "INSERT INTO t VALUES (%s)", "parameters": [1]},
            Statement(sql="UPDATE t SET a = 2"),
            {"sql": "SELECT count(*) AS total FROM t"},
        ],
    )
    assert [r.command for r in results] == ["INSERT", "UPDATE", "SELECT"]
    assert results[2].rows == [{"total": 3}]
    assert driver.connections[0].statements()[1:] == [
        "BEGIN",
        "INSERT INTO t VALUES (%s)",
        "UPDATE t SET a = 2",
        "SELECT count(*) AS total FROM t",
        "COMMIT",
    ]
    assert pool.stats().in_use == 0


def test_execute_transaction_rolls_back_on_failure() -> None:
    driver = FakeDriver({"UPDATE": RuntimeError("deadlock detected")})
    manager, pool = _manager(driver)
    with pytest.raises(Exception) as exc_info:
        execute_transaction(
            manager,
            [{"sql": "INSERT INTO t VALUES (1)"}, {"sql": "UPDATE t SET a = 2"}, {"sql": "DELETE FROM t"}],
        )
    assert "deadlock" in str(exc_info.value)
    statements = driver.connections[0].statements()
    assert statements[-1] == "ROLLBACK"
    assert "DELETE FROM t" not in statements
    assert "COMMIT" not in statements
    assert pool.stats().in_use == 0


def test_execute_transaction_read_only_rejects_writes() -> None:
    driver = FakeDriver()
    manager, pool = _manager(driver)
    with pytest.raises(PermissionDeniedError):
        execute_transaction(manager, [{"sql": "DELETE FROM t"}], read_only=True)
    assert driver.connections[0].statements()[1:] == ["BEGIN READ ONLY", "ROLLBACK"]
    assert pool.stats().in_use == 0


def test_statement_requires_sql() -> None:
    with pytest.raises(ValidationError):
        Statement(sql="")

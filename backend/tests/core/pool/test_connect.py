"""
Unit tests for core.pool.connect: driver dispatch, statement timeout,
transaction directives and cursor -> QueryResult conversion.

Driver connect calls are patched; statements run against tests.utils.driver.
"""

from unittest.mock import MagicMock, patch

import pytest

from sqlbridge.core.pool import (
    apply_statement_timeout,
    begin_directive,
    connect,
    cursor_to_dicts,
    cursor_to_result,
    execute,
    health_check,
    run_query,
)
from sqlbridge.models import ProductTypeEnum
from tests.utils.driver import FakeConnection


def _pg_params(**overrides) -> dict:
    params = {
        "DB_PRODUCT_TYPE": "postgres",
        "DB_HOST": "db.internal",
        "DB_PORT": 5433,
        "DB_NAME": "app",
        "DB_USER": "reader",
        "DB_PASSWORD": "secret",
        "DB_CONNECT_TIMEOUT": 7,
    }
    params.update(overrides)
    return params


# --- connect ---


def test_connect_postgres_uses_psycopg_in_autocommit() -> None:
    with patch("sqlbridge.core.pool.connect.psycopg.connect") as m:
        connect(_pg_params())
    kwargs = m.call_args.kwargs
    assert kwargs["host"] == "db.internal"
    assert kwargs["port"] == 5433
    assert kwargs["dbname"] == "app"
    assert kwargs["autocommit"] is True
    assert kwargs["connect_timeout"] == 7
    assert kwargs["sslmode"] == "prefer"


def test_connect_postgres_prefers_database_url() -> None:
    url = "postgresql://u:p@h:5432/db"
    with patch("sqlbridge.core.pool.connect.psycopg.connect") as m:
        connect(_pg_params(DATABASE_URL=url, DB_SSL=True))
    assert m.call_args.args == (url,)
    assert m.call_args.kwargs["autocommit"] is True


def test_connect_mysql_uses_pymysql() -> None:
    params = _pg_params(DB_PRODUCT_TYPE="mysql", DB_PORT=None, DB_SSL=True)
    with patch("sqlbridge.core.pool.connect.pymysql.connect") as m:
        connect(params)
    kwargs = m.call_args.kwargs
    assert kwargs["port"] == 3306
    assert kwargs["database"] == "app"
    assert kwargs["autocommit"] is True
    assert kwargs["ssl"] == {}


def test_connect_unknown_product_type_rejected() -> None:
    with pytest.raises(ValueError):
        connect(_pg_params(DB_PRODUCT_TYPE="oracle"))


# --- directives / statement timeout ---


def test_begin_directive_per_product() -> None:
    assert begin_directive(ProductTypeEnum.POSTGRES) == "BEGIN"
    assert begin_directive(ProductTypeEnum.POSTGRES, read_only=True) == "BEGIN READ ONLY"
    assert begin_directive(ProductTypeEnum.MYSQL) == "START TRANSACTION"
    assert begin_directive(ProductTypeEnum.MYSQL, read_only=True) == "START TRANSACTION READ ONLY"


def test_apply_statement_timeout_postgres_and_mysql() -> None:
    pg = FakeConnection()
    apply_statement_timeout(pg, ProductTypeEnum.POSTGRES, 5000)
    my = FakeConnection()
    apply_statement_timeout(my, ProductTypeEnum.MYSQL, 2500)
    assert pg.statements() == ["SET statement_timeout = 5000"]
    assert my.statements() == ["SET SESSION max_execution_time = 2500"]


def test_execute_applies_timeout_before_statement() -> None:
    conn = FakeConnection()
    cur = execute(
        conn,
        "SELECT * FROM users WHERE id = %s",
        (1,),
        product_type=ProductTypeEnum.POSTGRES,
        timeout_ms=1000,
    )
    cur.close()
    assert conn.statements() == [
        "SET statement_timeout = 1000",
        "SELECT * FROM users WHERE id = %s",
    ]
    assert conn.executed[1][1] == (1,)


def test_execute_closes_cursor_on_error() -> None:
    conn = FakeConnection({"SELECT": RuntimeError("syntax")})
    cursors = []
    original = conn.cursor

    def tracking_cursor():
        c = original()
        cursors.append(c)
        return c

    conn.cursor = tracking_cursor  # type: ignore[method-assign]
    with pytest.raises(RuntimeError):
        execute(conn, "SELECT broken")
    assert cursors[0].closed is True


# --- cursor conversion ---


def test_cursor_to_result_select() -> None:
    conn = FakeConnection({"SELECT": [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]})
    cur = execute(conn, "select id, name from t")
    result = cursor_to_result(cur, "select id, name from t", 3.5)
    assert result.rows == [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]
    assert result.row_count == 2
    assert [f.name for f in result.fields] == ["id", "name"]
    assert result.command == "SELECT"
    assert result.duration_ms == 3.5
    assert cur.closed is True


def test_cursor_to_result_falls_back_to_first_keyword() -> None:
    cur = MagicMock()
    cur.description = None
    cur.rowcount = 3
    cur.statusmessage = None
    result = cursor_to_result(cur, "  update t set x = 1")
    assert result.command == "UPDATE"
    assert result.row_count == 3
    assert result.rows == []
    cur.close.assert_called_once()


def test_cursor_to_dicts_without_description() -> None:
    cur = MagicMock()
    cur.description = None
    assert cursor_to_dicts(cur) == []


def test_run_query_measures_duration() -> None:
    conn = FakeConnection({"SELECT": [{"n": 1}]})
    result = run_query(conn, "SELECT 1 AS n")
    assert result.rows == [{"n": 1}]
    assert result.duration_ms >= 0


# --- health_check ---


def test_health_check_ok_and_failure() -> None:
    assert health_check(FakeConnection()) is True
    dead = FakeConnection()
    dead.closed = True
    assert health_check(dead) is False

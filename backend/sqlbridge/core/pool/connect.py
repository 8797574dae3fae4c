"""
DB connection helpers: open a driver connection, apply the statement timeout,
execute, and turn a cursor into a QueryResult.

Uses psycopg (PostgreSQL) or pymysql (MySQL) based on product_type.
Connections are opened in autocommit mode; transactions are driven by the
explicit BEGIN / COMMIT / ROLLBACK directives below.
"""

import time
from typing import Any

import psycopg
import pymysql

from sqlbridge.core.sql import first_keyword
from sqlbridge.models import FieldInfo, ProductTypeEnum, QueryResult

COMMIT = "COMMIT"
ROLLBACK = "ROLLBACK"


def _get(source: Any, key: str) -> Any:
    """Get attribute or dict key from Settings, dict, or Pydantic model."""
    if isinstance(source, dict):
        return source.get(key)
    return getattr(source, key, None)


def resolve_product_type(value: Any) -> ProductTypeEnum:
    if value is None:
        raise ValueError("product_type is required")
    if isinstance(value, ProductTypeEnum):
        return value
    return ProductTypeEnum(str(value))


def connect(source: Any) -> Any:
    """
    Open a connection from Settings (DB_* keys) or a dict with the same keys.

    DATABASE_URL wins for Postgres when present.
    """
    pt = resolve_product_type(_get(source, "DB_PRODUCT_TYPE"))
    timeout = _get(source, "DB_CONNECT_TIMEOUT") or 10
    url = _get(source, "DATABASE_URL")

    if pt == ProductTypeEnum.POSTGRES:
        if url:
            return psycopg.connect(url, connect_timeout=timeout, autocommit=True)
        return psycopg.connect(
            host=_get(source, "DB_HOST"),
            port=int(_get(source, "DB_PORT") or 5432),
            dbname=_get(source, "DB_NAME"),
            user=_get(source, "DB_USER"),
            password=_get(source, "DB_PASSWORD") or "",
            sslmode="require" if _get(source, "DB_SSL") else "prefer",
            connect_timeout=timeout,
            autocommit=True,
        )
    if pt == ProductTypeEnum.MYSQL:
        kwargs: dict[str, Any] = {}
        if _get(source, "DB_SSL"):
            kwargs["ssl"] = {}
        return pymysql.connect(
            host=_get(source, "DB_HOST"),
            port=int(_get(source, "DB_PORT") or 3306),
            database=_get(source, "DB_NAME"),
            user=_get(source, "DB_USER"),
            password=_get(source, "DB_PASSWORD") or "",
            connect_timeout=timeout,
            autocommit=True,
            **kwargs,
        )
    raise ValueError(f"Unsupported product_type: {pt}")


def begin_directive(product_type: ProductTypeEnum, read_only: bool = False) -> str:
    if product_type == ProductTypeEnum.MYSQL:
        return "START TRANSACTION READ ONLY" if read_only else "START TRANSACTION"
    return "BEGIN READ ONLY" if read_only else "BEGIN"


def run_directive(conn: Any, directive: str) -> None:
    cur = conn.cursor()
    try:
        cur.execute(directive)
    finally:
        cur.close()


def apply_statement_timeout(conn: Any, product_type: ProductTypeEnum, timeout_ms: int) -> None:
    """Set the session statement timeout, overriding whatever was set before."""
    timeout_ms = int(timeout_ms)
    cur = conn.cursor()
    try:
        if product_type == ProductTypeEnum.POSTGRES:
            cur.execute(f"SET statement_timeout = {timeout_ms}")
        elif product_type == ProductTypeEnum.MYSQL:
            cur.execute(f"SET SESSION max_execution_time = {timeout_ms}")
    finally:
        cur.close()


def execute(
    conn: Any,
    sql: str,
    params: dict | list | tuple | None = None,
    *,
    product_type: ProductTypeEnum | None = None,
    timeout_ms: int | None = None,
) -> Any:
    """
    Execute SQL and return the cursor. Caller uses cursor_to_result(cursor, ...).

    When both product_type and timeout_ms are given the statement timeout is
    applied first.
    """
    if product_type is not None and timeout_ms is not None and timeout_ms > 0:
        apply_statement_timeout(conn, product_type, timeout_ms)

    cur = conn.cursor()
    try:
        if params is not None:
            cur.execute(sql, params)
        else:
            cur.execute(sql)
    except Exception:
        cur.close()
        raise
    return cur


def cursor_to_dicts(cursor: Any) -> list[dict[str, Any]]:
    """Convert cursor result to list of dicts. Works for both psycopg and pymysql."""
    desc = cursor.description
    if not desc:
        return []
    names = [d[0] for d in desc]
    return [dict(zip(names, row, strict=True)) for row in cursor.fetchall()]


def cursor_to_result(cursor: Any, sql: str, duration_ms: float = 0.0) -> QueryResult:
    """Build the QueryResult (rows, row_count, fields, command) and close the cursor."""
    try:
        desc = cursor.description or []
        rows = cursor_to_dicts(cursor)
        fields = [FieldInfo(name=d[0], type_code=d[1] if len(d) > 1 else None) for d in desc]
        status = getattr(cursor, "statusmessage", None)
        command = status.split()[0].upper() if isinstance(status, str) and status else first_keyword(sql)
        rowcount = cursor.rowcount
        if rowcount is None or rowcount < 0:
            rowcount = len(rows)
        return QueryResult(
            rows=rows,
            row_count=rowcount,
            fields=fields,
            command=command,
            duration_ms=duration_ms,
        )
    finally:
        cursor.close()


def run_query(
    conn: Any,
    sql: str,
    params: dict | list | tuple | None = None,
    *,
    product_type: ProductTypeEnum | None = None,
    timeout_ms: int | None = None,
) -> QueryResult:
    """execute() + cursor_to_result() with the elapsed time filled in."""
    start = time.monotonic()
    cur = execute(conn, sql, params, product_type=product_type, timeout_ms=timeout_ms)
    duration_ms = (time.monotonic() - start) * 1000
    return cursor_to_result(cur, sql, duration_ms)

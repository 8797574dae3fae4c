"""
DB connection and connection pool for the configured database.

No driver layer: psycopg and pymysql are installed via pip; Settings
(DB_PRODUCT_TYPE, DB_HOST, ...) is enough to open a connection.
"""

from .connect import (
    apply_statement_timeout,
    begin_directive,
    connect,
    cursor_to_dicts,
    cursor_to_result,
    execute,
    run_query,
)
from .health import health_check
from .manager import ConnectionPool

__all__ = [
    "connect",
    "execute",
    "run_query",
    "apply_statement_timeout",
    "begin_directive",
    "cursor_to_dicts",
    "cursor_to_result",
    "health_check",
    "ConnectionPool",
]

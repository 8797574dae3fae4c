"""
Statement shape helpers. SQL arrives already validated; these only look at the
leading keyword.
"""

import re

WRITE_OPERATIONS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "CREATE",
    "DROP",
    "ALTER",
    "TRUNCATE",
    "GRANT",
    "REVOKE",
    "COPY",
)

_WS = re.compile(r"\s+")
_LEADING = re.compile(r"^[\s;]+")


def normalize_sql(sql: str) -> str:
    """Collapse whitespace runs and trim."""
    return _WS.sub(" ", sql).strip()


def first_keyword(sql: str) -> str:
    s = _LEADING.sub("", sql)
    parts = s.split(None, 1)
    return parts[0].upper() if parts else ""


def is_write_operation(sql: str) -> bool:
    return first_keyword(sql) in WRITE_OPERATIONS

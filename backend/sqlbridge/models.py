"""
Shared enums and value objects for the session core.

QueryOptions / QueryResult travel across the façade; the stats models are the
read-only snapshots returned by get_pool_stats / get_operational_stats.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProductTypeEnum(str, Enum):
    """Supported database product types (postgres, mysql)."""

    POSTGRES = "postgres"
    MYSQL = "mysql"


class TransactionStateEnum(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


# ---------------------------------------------------------------------------
# Query in / out
# ---------------------------------------------------------------------------


class QueryOptions(BaseModel):
    """Per-call options for a one-shot query."""

    model_config = ConfigDict(frozen=True)

    timeout_ms: int | None = Field(
        default=None, gt=0, description="Statement timeout; falls back to MAX_QUERY_TIME_MS."
    )
    read_only: bool = False
    use_cache: bool = True


class FieldInfo(BaseModel):
    name: str
    type_code: Any = None


class QueryResult(BaseModel):
    """Result of one statement: rows as dicts plus cursor metadata."""

    rows: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    fields: list[FieldInfo] = Field(default_factory=list)
    command: str = ""
    duration_ms: float = 0.0


# ---------------------------------------------------------------------------
# Stats snapshots
# ---------------------------------------------------------------------------


class PoolStats(BaseModel):
    total: int
    idle: int
    in_use: int
    waiting: int
    min: int
    max: int
    idle_timeout_ms: int


class CacheStats(BaseModel):
    item_count: int
    max_keys: int
    size_bytes: int
    hit_rate: float
    hits: int
    misses: int
    sets: int
    deletes: int
    evictions: int


class OperationalStats(BaseModel):
    total_queries: int
    total_errors: int
    total_transactions: int
    average_query_time_ms: float
    connection_count: int
    active_transactions: int
    pool: PoolStats
    cache: CacheStats | None = None
    rate_limiter: dict[str, int] | None = None

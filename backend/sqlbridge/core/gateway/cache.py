"""
In-process query result cache: LRU bounded by key count, TTL per entry.

Keys are ``<normalized sql>|<digest>`` where the digest covers the SQL, the
JSON of the parameters and the JSON of the options. Serialization is
positional, so the same options in a different key order produce a different
key. Keeping the normalized SQL in the key lets invalidate_table() match by
table name; that match is a regex heuristic (views, aliases and substring
collisions can make it miss or over-remove entries).
"""

import hashlib
import json
import logging
import re
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from sqlbridge.core.errors import InvalidStatementError
from sqlbridge.core.sql import is_write_operation, normalize_sql
from sqlbridge.models import CacheStats

_log = logging.getLogger(__name__)

_NON_CACHEABLE_EXTRA = ("VACUUM", "ANALYZE")
_DIGEST_LEN = 16


class CacheEntry:
    __slots__ = ("data", "created_at", "hit_count", "size_bytes")

    def __init__(self, data: Any, created_at: float, size_bytes: int) -> None:
        self.data = data
        self.created_at = created_at
        self.hit_count = 0
        self.size_bytes = size_bytes


def _dumps(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "model_dump"):
        value = value.model_dump()
    return json.dumps(value, default=str, separators=(",", ":"))


def fingerprint(sql: str, params: Any = None, options: Any = None) -> str:
    normalized = normalize_sql(sql).lower()
    raw = normalized + _dumps(params) + _dumps(options)
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:_DIGEST_LEN]
    return f"{normalized}|{digest}"


def is_cacheable(sql: str) -> bool:
    if is_write_operation(sql):
        return False
    head = sql.lstrip().upper()
    return not head.startswith(_NON_CACHEABLE_EXTRA)


def _estimate_size(data: Any) -> int:
    try:
        return len(_dumps(data)) * 2
    except (TypeError, ValueError):
        return 1000


class QueryResultCache:
    def __init__(
        self,
        max_keys: int,
        ttl_sec: float,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_keys = max(1, max_keys)
        self.ttl_sec = ttl_sec
        self.enabled = enabled
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._size_bytes = 0
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._evictions = 0

    # ------------------------------------------------------------------
    # By SQL
    # ------------------------------------------------------------------

    def get(self, sql: str, params: Any = None, options: Any = None) -> Any | None:
        if not self.enabled or not is_cacheable(sql):
            return None
        return self.get_by_key(fingerprint(sql, params, options))

    def set(self, sql: str, data: Any, params: Any = None, options: Any = None) -> None:
        if not self.enabled or not is_cacheable(sql):
            return
        self.set_by_key(fingerprint(sql, params, options), data)

    # ------------------------------------------------------------------
    # By key
    # ------------------------------------------------------------------

    def get_by_key(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._expired(entry, now):
                self._remove(key)
                entry = None
            if entry is None:
                self._misses += 1
                return None
            entry.hit_count += 1
            self._entries.move_to_end(key)
            self._hits += 1
            hits = entry.hit_count
            data = entry.data
        _log.debug("Cache hit", extra={"key": key, "hits": hits})
        return data

    def set_by_key(self, key: str, data: Any) -> None:
        if not self.enabled:
            return
        size = _estimate_size(data)
        with self._lock:
            if key in self._entries:
                self._remove(key)
            self._entries[key] = CacheEntry(data, self._clock(), size)
            self._size_bytes += size
            self._sets += 1
            while len(self._entries) > self.max_keys:
                oldest = next(iter(self._entries))
                self._remove(oldest)
                self._evictions += 1
        _log.debug("Cache set", extra={"key": key, "size": size})

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, pattern: str | None = None) -> int:
        """Remove keys matching ``pattern`` (case-insensitive regex); None clears all."""
        regex = None
        if pattern:
            try:
                regex = re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                raise InvalidStatementError(
                    f"Invalid cache invalidation pattern: {e}",
                    context={"pattern": pattern},
                ) from e
        with self._lock:
            if regex is None:
                removed = len(self._entries)
                self._deletes += removed
                self._entries.clear()
                self._size_bytes = 0
            else:
                keys = [k for k in self._entries if regex.search(k)]
                for k in keys:
                    self._remove(k)
                removed = len(keys)
        if pattern:
            _log.info(
                "Cache invalidated by pattern",
                extra={"pattern": pattern, "entries_removed": removed},
            )
        else:
            _log.info("Cache cleared completely", extra={"entries_removed": removed})
        return removed

    def invalidate_table(self, table_name: str, schema_name: str = "public") -> int:
        t = re.escape(table_name)
        pattern = rf"{re.escape(schema_name)}\.{t}|from\s+{t}|join\s+{t}"
        return self.invalidate(pattern)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            dead = [k for k, e in self._entries.items() if self._expired(e, now)]
            for k in dead:
                self._remove(k)
        if dead:
            _log.debug("Cache cleanup completed", extra={"entries_removed": len(dead)})
        return len(dead)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            hit_rate = (self._hits / total) * 100 if total else 0.0
            return CacheStats(
                item_count=len(self._entries),
                max_keys=self.max_keys,
                size_bytes=self._size_bytes,
                hit_rate=round(hit_rate, 2),
                hits=self._hits,
                misses=self._misses,
                sets=self._sets,
                deletes=self._deletes,
                evictions=self._evictions,
            )

    def recent_entries(self, limit: int = 10) -> list[tuple[str, CacheEntry]]:
        with self._lock:
            items = list(self._entries.items())
        items.sort(key=lambda kv: kv[1].created_at, reverse=True)
        return items[:limit]

    def popular_entries(self, limit: int = 10) -> list[tuple[str, CacheEntry]]:
        with self._lock:
            items = list(self._entries.items())
        items.sort(key=lambda kv: kv[1].hit_count, reverse=True)
        return items[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return (now - entry.created_at) >= self.ttl_sec

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._size_bytes -= entry.size_bytes
            self._deletes += 1

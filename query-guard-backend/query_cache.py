"""
Result Cache for QueryGuard
Caches query result sets per (table, normalized query) with TTL expiry.

Storage is sharded by table: each table owns its entries, LRU order, stats
and lock, so requests on different tables never contend.
"""

import hashlib
import json
import logging
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')


def normalize_query(query: str) -> str:
    """Trim, lower-case and collapse internal whitespace."""
    return _WHITESPACE.sub(' ', query.strip().lower())


def make_cache_key(table_name: str, query: str) -> str:
    """SHA-256 of 'table:normalized_query'."""
    content = f"{table_name}:{normalize_query(query)}"
    return hashlib.sha256(content.encode()).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cached result set"""
    key: str
    table_name: str
    rows: Tuple[Dict[str, Any], ...]
    row_count: int
    columns: Tuple[str, ...]
    execution_time_ms: float
    created_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()

    def copy_rows(self) -> List[Dict[str, Any]]:
        """Fresh row dicts so callers cannot mutate the cached value"""
        return [dict(row) for row in self.rows]


def _empty_stats() -> Dict[str, int]:
    return {
        "hits": 0,
        "misses": 0,
        "evictions": 0,
        "expirations": 0
    }


class _TableShard:
    """One table's entries in LRU order. Every access holds `lock`."""

    def __init__(self):
        self.lock = threading.RLock()
        self.entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.stats = _empty_stats()


class ResultCache:
    """LRU cache with TTL for query result sets, sharded by table"""

    def __init__(
        self,
        max_size: int = 500,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize result cache

        Args:
            max_size: Maximum number of entries per table
            ttl_seconds: Entry lifetime in seconds (1 hour)
            clock: Source of "now" (injectable for tests)
        """
        self.max_size = max_size
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._shards: Dict[str, _TableShard] = {}
        # Only shard creation goes through the registry lock
        self._registry_lock = threading.Lock()

    def _shard(self, table_name: str) -> _TableShard:
        shard = self._shards.get(table_name)
        if shard is not None:
            return shard
        with self._registry_lock:
            return self._shards.setdefault(table_name, _TableShard())

    def _all_shards(self) -> List[Tuple[str, _TableShard]]:
        with self._registry_lock:
            return list(self._shards.items())

    def _is_expired(self, entry: CacheEntry, now: datetime) -> bool:
        return entry.age_seconds(now) > self.ttl.total_seconds()

    def get(self, table_name: str, query: str) -> Optional[CacheEntry]:
        """
        Get cached result for a query on a table

        Args:
            table_name: Canonical table name
            query: Raw query text (normalized internally)

        Returns:
            CacheEntry or None if not found/expired
        """
        key = make_cache_key(table_name, query)
        shard = self._shard(table_name)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None:
                shard.stats["misses"] += 1
                return None

            # Lazy expiry: checked on read, evicted now
            if self._is_expired(entry, self._clock()):
                del shard.entries[key]
                shard.stats["misses"] += 1
                shard.stats["expirations"] += 1
                logger.debug(f"[CACHE] Entry expired: {key[:16]}...")
                return None

            shard.entries.move_to_end(key)
            shard.stats["hits"] += 1

        logger.debug(f"[CACHE] Hit: {key[:16]}... ({table_name})")
        return entry

    def put(
        self,
        table_name: str,
        query: str,
        rows: Sequence[Dict[str, Any]],
        columns: Sequence[str],
        execution_time_ms: float,
        row_count: Optional[int] = None,
    ) -> CacheEntry:
        """
        Store a result set, replacing any previous entry wholesale

        Returns:
            The stored CacheEntry
        """
        key = make_cache_key(table_name, query)
        entry = CacheEntry(
            key=key,
            table_name=table_name,
            rows=tuple(dict(row) for row in rows),
            row_count=row_count if row_count is not None else len(rows),
            columns=tuple(columns),
            execution_time_ms=execution_time_ms,
            created_at=self._clock(),
        )

        shard = self._shard(table_name)
        with shard.lock:
            # Evict if at max size
            if key not in shard.entries and len(shard.entries) >= self.max_size:
                evicted_key, _ = shard.entries.popitem(last=False)
                shard.stats["evictions"] += 1
                logger.debug(f"[CACHE] Evicted entry: {evicted_key[:16]}...")

            shard.entries[key] = entry
            shard.entries.move_to_end(key)

        logger.debug(f"[CACHE] Cached entry: {key[:16]}... ({entry.row_count} rows, table: {table_name})")
        return entry

    def invalidate(self, table_name: Optional[str] = None) -> int:
        """
        Remove entries for one table, or every entry when table_name is None

        Returns:
            Number of entries removed
        """
        if table_name is None:
            count = 0
            for _, shard in self._all_shards():
                with shard.lock:
                    count += len(shard.entries)
                    shard.entries.clear()
            logger.info(f"[CACHE] Cleared {count} cache entries")
            return count

        shard = self._shard(table_name)
        with shard.lock:
            count = len(shard.entries)
            shard.entries.clear()
        logger.info(f"[CACHE] Invalidated {count} entries for {table_name}")
        return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries"""
        now = self._clock()
        removed = 0
        for _, shard in self._all_shards():
            with shard.lock:
                expired_keys = [
                    key for key, entry in shard.entries.items()
                    if self._is_expired(entry, now)
                ]
                for key in expired_keys:
                    del shard.entries[key]
                shard.stats["expirations"] += len(expired_keys)
            removed += len(expired_keys)

        if removed:
            logger.info(f"[CACHE] Cleaned up {removed} expired entries")
        return removed

    def __len__(self) -> int:
        return sum(len(shard.entries) for _, shard in self._all_shards())

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        stats = _empty_stats()
        entries: List[CacheEntry] = []
        tables: Dict[str, int] = {}
        for table_name, shard in self._all_shards():
            with shard.lock:
                for counter, value in shard.stats.items():
                    stats[counter] += value
                if shard.entries:
                    entries.extend(shard.entries.values())
                    tables[table_name] = len(shard.entries)

        total_requests = stats["hits"] + stats["misses"]
        hit_rate = stats["hits"] / total_requests if total_requests > 0 else 0
        capacity = self.max_size * len(tables)
        payload_bytes = sum(
            len(json.dumps(list(entry.rows), default=str)) for entry in entries
        )

        return {
            "total_entries": len(entries),
            "max_size": self.max_size,
            "utilization": len(entries) / capacity if capacity else 0,
            "ttl_seconds": int(self.ttl.total_seconds()),
            "payload_bytes": payload_bytes,
            "hits": stats["hits"],
            "misses": stats["misses"],
            "hit_rate": hit_rate,
            "evictions": stats["evictions"],
            "expirations": stats["expirations"],
            "entries_by_table": tables,
        }

    def reset_stats(self):
        """Reset statistics counters"""
        for _, shard in self._all_shards():
            with shard.lock:
                shard.stats = _empty_stats()
        logger.info("[CACHE] Cache statistics reset")

"""
Per-table query history and last-result store.

One history per active analysis session on a table. Histories are
append-only for the life of the session and are cleared by the external
session manager. Nothing here survives a process restart.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from table_locks import TableLockRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LastResult:
    """Most recent successful result on a table (used for chart generation)"""
    query: str
    data: List[Dict[str, Any]]
    row_count: int


class QueryHistoryStore:
    """Process-wide histories keyed by canonical table name."""

    def __init__(self):
        self._histories: Dict[str, List[str]] = {}
        self._last_results: Dict[str, LastResult] = {}
        self._locks = TableLockRegistry()

    def lock_for(self, table_name: str) -> threading.RLock:
        """Hold while reading the previous query and appending the next one."""
        return self._locks.lock_for(table_name)

    def get_history(self, table_name: str) -> List[str]:
        with self.lock_for(table_name):
            return list(self._histories.get(table_name, ()))

    def last_query(self, table_name: str) -> Optional[str]:
        with self.lock_for(table_name):
            history = self._histories.get(table_name)
            return history[-1] if history else None

    def count(self, table_name: str) -> int:
        with self.lock_for(table_name):
            return len(self._histories.get(table_name, ()))

    def append(self, table_name: str, query: str) -> int:
        """Append a query; returns its 1-based query number."""
        with self.lock_for(table_name):
            history = self._histories.setdefault(table_name, [])
            history.append(query)
            return len(history)

    def record_result(self, table_name: str, query: str, data: List[Dict[str, Any]], row_count: int) -> None:
        with self.lock_for(table_name):
            self._last_results[table_name] = LastResult(query=query, data=data, row_count=row_count)

    def get_last_result(self, table_name: str) -> Optional[LastResult]:
        with self.lock_for(table_name):
            return self._last_results.get(table_name)

    def clear(self, table_name: str) -> int:
        """Drop a session's history and last result; returns queries removed."""
        with self.lock_for(table_name):
            removed = len(self._histories.pop(table_name, ()))
            self._last_results.pop(table_name, None)
        logger.info(f"[HISTORY] Cleared {removed} queries for {table_name}")
        return removed

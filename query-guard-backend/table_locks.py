"""
Per-table lock registry.

Cache and history state is shared across every session in the process but
partitioned by table identity. Sessions on different tables never contend;
operations on the same table are serialized by that table's lock.
"""

import threading
from typing import Dict


class TableLockRegistry:
    """Lazily creates one re-entrant lock per table identity."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, table_name: str) -> threading.RLock:
        lock = self._locks.get(table_name)
        if lock is not None:
            return lock
        # Only creation goes through the registry lock
        with self._registry_lock:
            return self._locks.setdefault(table_name, threading.RLock())

    def __len__(self) -> int:
        return len(self._locks)

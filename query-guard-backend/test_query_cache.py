"""
Tests for the result cache: normalization, TTL expiry, LRU eviction, stats.
"""

import threading
import unittest
from datetime import datetime, timedelta

from query_cache import ResultCache, make_cache_key, normalize_query


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


ROWS = [{"region": "east", "total": 10}, {"region": "west", "total": 20}]
COLUMNS = ["region", "total"]


class TestCacheKeys(unittest.TestCase):

    def test_normalize_query(self):
        self.assertEqual(
            normalize_query("  SELECT *\n  FROM   T  "),
            "select * from t",
        )

    def test_key_ignores_case_and_whitespace(self):
        self.assertEqual(
            make_cache_key("csv_1_a", "SELECT * FROM t"),
            make_cache_key("csv_1_a", "select  *\nfrom t "),
        )

    def test_key_partitioned_by_table(self):
        self.assertNotEqual(
            make_cache_key("csv_1_a", "SELECT 1"),
            make_cache_key("csv_1_b", "SELECT 1"),
        )


class TestResultCache(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.cache = ResultCache(max_size=3, ttl_seconds=3600, clock=self.clock)

    def test_miss_then_hit(self):
        self.assertIsNone(self.cache.get("csv_1_a", "SELECT * FROM t"))
        self.cache.put("csv_1_a", "SELECT * FROM t", ROWS, COLUMNS, 12.5)

        entry = self.cache.get("csv_1_a", "select * from t")
        self.assertIsNotNone(entry)
        self.assertEqual(entry.copy_rows(), ROWS)
        self.assertEqual(entry.row_count, 2)
        self.assertEqual(entry.columns, ("region", "total"))
        self.assertEqual(entry.execution_time_ms, 12.5)

    def test_cached_rows_are_isolated_from_caller(self):
        rows = [dict(row) for row in ROWS]
        self.cache.put("csv_1_a", "SELECT * FROM t", rows, COLUMNS, 1.0)
        rows[0]["total"] = 999

        copied = self.cache.get("csv_1_a", "SELECT * FROM t").copy_rows()
        self.assertEqual(copied[0]["total"], 10)
        copied[0]["total"] = 555
        self.assertEqual(self.cache.get("csv_1_a", "SELECT * FROM t").rows[0]["total"], 10)

    def test_entry_within_ttl_is_hit(self):
        self.cache.put("csv_1_a", "SELECT 1", ROWS, COLUMNS, 1.0)
        self.clock.advance(minutes=59)
        self.assertIsNotNone(self.cache.get("csv_1_a", "SELECT 1"))

    def test_expired_entry_is_miss_and_evicted(self):
        self.cache.put("csv_1_a", "SELECT 1", ROWS, COLUMNS, 1.0)
        self.clock.advance(minutes=61)

        self.assertIsNone(self.cache.get("csv_1_a", "SELECT 1"))
        self.assertEqual(len(self.cache), 0)
        stats = self.cache.get_stats()
        self.assertEqual(stats["expirations"], 1)
        self.assertEqual(stats["misses"], 1)

    def test_put_replaces_entry(self):
        self.cache.put("csv_1_a", "SELECT 1", ROWS, COLUMNS, 1.0)
        self.cache.put("csv_1_a", "select 1", ROWS[:1], COLUMNS, 2.0)
        self.assertEqual(len(self.cache), 1)
        self.assertEqual(self.cache.get("csv_1_a", "SELECT 1").row_count, 1)

    def test_lru_eviction(self):
        self.cache.put("csv_1_a", "q1", ROWS, COLUMNS, 1.0)
        self.cache.put("csv_1_a", "q2", ROWS, COLUMNS, 1.0)
        self.cache.put("csv_1_a", "q3", ROWS, COLUMNS, 1.0)
        # Touch q1 so q2 becomes least recently used
        self.assertIsNotNone(self.cache.get("csv_1_a", "q1"))
        self.cache.put("csv_1_a", "q4", ROWS, COLUMNS, 1.0)

        self.assertEqual(len(self.cache), 3)
        self.assertIsNone(self.cache.get("csv_1_a", "q2"))
        self.assertIsNotNone(self.cache.get("csv_1_a", "q1"))
        self.assertEqual(self.cache.get_stats()["evictions"], 1)

    def test_invalidate_table(self):
        self.cache.put("csv_1_a", "q1", ROWS, COLUMNS, 1.0)
        self.cache.put("csv_1_a", "q2", ROWS, COLUMNS, 1.0)
        self.cache.put("csv_1_b", "q1", ROWS, COLUMNS, 1.0)

        self.assertEqual(self.cache.invalidate("csv_1_a"), 2)
        self.assertIsNone(self.cache.get("csv_1_a", "q1"))
        self.assertIsNotNone(self.cache.get("csv_1_b", "q1"))

    def test_invalidate_all(self):
        self.cache.put("csv_1_a", "q1", ROWS, COLUMNS, 1.0)
        self.cache.put("csv_1_b", "q1", ROWS, COLUMNS, 1.0)
        self.assertEqual(self.cache.invalidate(), 2)
        self.assertEqual(len(self.cache), 0)

    def test_cleanup_expired(self):
        self.cache.put("csv_1_a", "q1", ROWS, COLUMNS, 1.0)
        self.clock.advance(minutes=30)
        self.cache.put("csv_1_a", "q2", ROWS, COLUMNS, 1.0)
        self.clock.advance(minutes=31)

        self.assertEqual(self.cache.cleanup_expired(), 1)
        self.assertIsNotNone(self.cache.get("csv_1_a", "q2"))

    def test_stats(self):
        self.cache.put("csv_1_a", "q1", ROWS, COLUMNS, 1.0)
        self.cache.get("csv_1_a", "q1")
        self.cache.get("csv_1_a", "q2")

        stats = self.cache.get_stats()
        self.assertEqual(stats["total_entries"], 1)
        self.assertEqual(stats["max_size"], 3)
        self.assertEqual(stats["ttl_seconds"], 3600)
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertAlmostEqual(stats["hit_rate"], 0.5)
        self.assertGreater(stats["payload_bytes"], 0)
        self.assertEqual(stats["entries_by_table"], {"csv_1_a": 1})

        self.cache.reset_stats()
        self.assertEqual(self.cache.get_stats()["hits"], 0)


class TestTableShards(unittest.TestCase):
    """Each table keeps its own entries, LRU bound and lock."""

    def setUp(self):
        self.cache = ResultCache(max_size=2, ttl_seconds=3600)

    def test_filling_one_table_does_not_evict_another(self):
        self.cache.put("csv_1_b", "SELECT 1", [{"n": 1}], ["n"], 1.0)
        for i in range(5):
            self.cache.put("csv_1_a", f"SELECT {i}", [{"n": i}], ["n"], 1.0)

        self.assertIsNotNone(self.cache.get("csv_1_b", "SELECT 1"))
        stats = self.cache.get_stats()
        self.assertEqual(stats["entries_by_table"], {"csv_1_a": 2, "csv_1_b": 1})
        self.assertEqual(stats["evictions"], 3)

    def test_busy_table_does_not_block_other_tables(self):
        self.cache.put("csv_1_a", "SELECT 1", [{"n": 1}], ["n"], 1.0)
        results = []

        def use_other_table():
            self.cache.put("csv_1_b", "SELECT 2", [{"n": 2}], ["n"], 1.0)
            results.append(self.cache.get("csv_1_b", "SELECT 2"))

        with self.cache._shard("csv_1_a").lock:
            worker = threading.Thread(target=use_other_table)
            worker.start()
            worker.join(timeout=2)
            self.assertFalse(worker.is_alive())

        self.assertEqual(results[0].rows, ({"n": 2},))

    def test_concurrent_writers_on_separate_tables(self):
        def fill(table):
            for i in range(50):
                self.cache.put(table, f"SELECT {i}", [{"n": i}], ["n"], 1.0)
                self.cache.get(table, f"SELECT {i}")

        tables = [f"csv_1_t{i}" for i in range(8)]
        workers = [threading.Thread(target=fill, args=(t,)) for t in tables]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        stats = self.cache.get_stats()
        self.assertEqual(len(self.cache), 16)
        self.assertEqual(stats["hits"], 400)
        self.assertEqual(stats["evictions"], 8 * 48)


if __name__ == "__main__":
    unittest.main()

"""
Tests for bounded execution and the cached execution facade.

Uses a temporary SQLite database through SQLAlchemy; no server required.
"""

import os
import tempfile
import time
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from sqlalchemy import create_engine

from config import GuardSettings
from guard_errors import QueryExecutionError, QueryTimeoutError, QueryValidationError
from query_cache import ResultCache
from query_results import CachedResult, ExecutedResult, FailedResult, SampledResult
from sql_executor import QueryExecutor, SQLExecutor

CSV_ID = "1700000000000_abc123"
TABLE = "csv_1700000000000_abc123"

SLOW_QUERY = (
    "WITH RECURSIVE counter(x) AS ("
    "SELECT 1 UNION ALL SELECT x + 1 FROM counter WHERE x < 500000000"
    ") SELECT COUNT(*) AS n FROM counter"
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_engine(directory):
    engine = create_engine(
        f"sqlite:///{os.path.join(directory, 'datasets.db')}",
        connect_args={"check_same_thread": False},
    )
    regions = ["east", "west", "north", "south"]
    with engine.begin() as conn:
        conn.exec_driver_sql(f"CREATE TABLE {TABLE} (id INTEGER, region TEXT, amount REAL)")
        for i in range(1, 21):
            conn.exec_driver_sql(
                f"INSERT INTO {TABLE} VALUES ({i}, '{regions[i % 4]}', {i * 10.0})"
            )
    return engine


class DatabaseTestCase(unittest.TestCase):

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.engine = make_engine(tmp.name)
        self.addCleanup(self.engine.dispose)

    def make_sql_executor(self, cache=None, **overrides):
        settings = GuardSettings(dataset_schema="", **overrides)
        executor = QueryExecutor(
            self.engine,
            max_rows=settings.max_rows,
            timeout_seconds=settings.timeout_seconds,
        )
        if cache is None:
            cache = ResultCache(max_size=settings.cache_max_size, ttl_seconds=settings.cache_ttl_seconds)
        return SQLExecutor(executor, cache, settings)


class TestQueryExecutor(DatabaseTestCase):

    def test_execute_returns_rows_and_columns(self):
        executor = QueryExecutor(self.engine)
        result = executor.execute(f"SELECT id, region FROM {TABLE} WHERE id <= 3 ORDER BY id", TABLE)

        self.assertEqual(result.columns, ["id", "region"])
        self.assertEqual(result.row_count, 3)
        self.assertEqual(result.rows[0], {"id": 1, "region": "west"})
        self.assertTrue(result.sql.endswith("LIMIT 10000"))
        self.assertFalse(result.truncated)
        self.assertGreaterEqual(result.execution_time_ms, 0)

    def test_row_cap_applies_even_with_larger_limit(self):
        executor = QueryExecutor(self.engine, max_rows=5)
        result = executor.execute(f"SELECT * FROM {TABLE} LIMIT 100", TABLE)
        self.assertEqual(result.row_count, 5)
        self.assertTrue(result.truncated)

    def test_execution_error(self):
        executor = QueryExecutor(self.engine)
        with self.assertRaises(QueryExecutionError) as ctx:
            executor.execute("SELECT * FROM missing_table", "missing_table")
        self.assertIn("missing_table", ctx.exception.message)
        self.assertEqual(executor.get_stats()["failures"], 1)
        self.assertEqual(self.engine.pool.checkedout(), 0)

    def test_non_select_statement_refused(self):
        executor = QueryExecutor(self.engine)
        with self.assertRaises(QueryValidationError):
            executor.execute(f"DELETE FROM {TABLE}", TABLE)
        self.assertEqual(executor.get_stats()["executions"], 0)

    def test_timeout_cancels_and_releases_connection(self):
        executor = QueryExecutor(self.engine, timeout_seconds=0.2)
        with self.assertRaises(QueryTimeoutError) as ctx:
            executor.execute(SLOW_QUERY, TABLE)

        self.assertIn("timeout", ctx.exception.message)
        self.assertEqual(executor.get_stats()["timeouts"], 1)
        self.assertEqual(self.engine.pool.checkedout(), 0)

        # Pool is still usable afterwards
        result = executor.execute(f"SELECT COUNT(*) AS n FROM {TABLE}", TABLE)
        self.assertEqual(result.rows, [{"n": 20}])

    def test_repeated_trailing_semicolons_accepted(self):
        executor = QueryExecutor(self.engine)
        result = executor.execute("SELECT 1 AS n;;", TABLE)
        self.assertEqual(result.rows, [{"n": 1}])

    def test_semicolon_separated_statements_still_refused(self):
        executor = QueryExecutor(self.engine)
        with self.assertRaises(QueryValidationError):
            executor.execute(f"SELECT 1; SELECT * FROM {TABLE}", TABLE)

    def test_connection_released_only_after_cancel_finishes(self):
        events = []

        def slow_prepare(conn, timeout):
            time.sleep(0.05)

        def slow_cancel(dbapi_connection, timed_out, table_name, timeout):
            events.append("started")
            timed_out.set()
            time.sleep(0.2)
            events.append("finished")

        executor = QueryExecutor(self.engine, timeout_seconds=0.001)
        with patch.object(executor, "_prepare_transaction", side_effect=slow_prepare), \
                patch.object(QueryExecutor, "_cancel", staticmethod(slow_cancel)):
            with self.assertRaises(QueryTimeoutError):
                executor.execute(f"SELECT COUNT(*) AS n FROM {TABLE}", TABLE)

        self.assertEqual(events, ["started", "finished"])
        self.assertEqual(self.engine.pool.checkedout(), 0)


class TestSQLExecutor(DatabaseTestCase):

    def test_second_identical_query_served_from_cache(self):
        sql_executor = self.make_sql_executor()
        query = f"SELECT region, SUM(amount) AS total FROM {TABLE} GROUP BY region ORDER BY region"

        first = sql_executor.execute_with_cache(query, CSV_ID)
        second = sql_executor.execute_with_cache(query.lower(), CSV_ID)

        self.assertIsInstance(first, ExecutedResult)
        self.assertIsInstance(second, CachedResult)
        self.assertTrue(second.from_cache)
        self.assertEqual(first.data, second.data)
        self.assertEqual(first.columns, second.columns)
        self.assertEqual(sql_executor.executor.get_stats()["executions"], 1)

    def test_expired_entry_re_executes(self):
        clock = FakeClock()
        sql_executor = self.make_sql_executor(cache=ResultCache(ttl_seconds=3600, clock=clock))
        query = f"SELECT COUNT(*) AS n FROM {TABLE}"

        sql_executor.execute_with_cache(query, CSV_ID)
        clock.advance(minutes=61)
        result = sql_executor.execute_with_cache(query, CSV_ID)

        self.assertIsInstance(result, ExecutedResult)
        self.assertEqual(sql_executor.executor.get_stats()["executions"], 2)

    def test_validation_failure_never_reaches_database(self):
        sql_executor = self.make_sql_executor()
        result = sql_executor.execute_with_cache(f"DROP TABLE {TABLE}", CSV_ID)

        self.assertIsInstance(result, FailedResult)
        self.assertEqual(result.error_type, "ValidationError")
        self.assertTrue(result.suggestion)
        self.assertEqual(sql_executor.executor.get_stats()["executions"], 0)
        self.assertFalse(result.to_dict()["success"])

    def test_table_mismatch(self):
        sql_executor = self.make_sql_executor()
        result = sql_executor.execute_with_cache(f"SELECT * FROM {TABLE}", CSV_ID, "csv_other")

        self.assertIsInstance(result, FailedResult)
        self.assertEqual(result.error_type, "TableMismatchError")
        self.assertEqual(result.error, "Table name does not match CSV ID")

    def test_matching_table_name_accepted(self):
        sql_executor = self.make_sql_executor()
        result = sql_executor.execute_with_cache(f"SELECT * FROM {TABLE}", CSV_ID, TABLE)
        self.assertTrue(result.success)
        self.assertEqual(result.row_count, 20)

    def test_execution_error_becomes_failed_result(self):
        sql_executor = self.make_sql_executor()
        result = sql_executor.execute_with_cache("SELECT nope FROM missing_table", CSV_ID)
        self.assertIsInstance(result, FailedResult)
        self.assertEqual(result.error_type, "ExecutionError")

    def test_timeout_becomes_failed_result(self):
        sql_executor = self.make_sql_executor(timeout_seconds=0.2)
        result = sql_executor.execute_with_cache(SLOW_QUERY, CSV_ID)

        self.assertIsInstance(result, FailedResult)
        self.assertEqual(result.error_type, "TimeoutError")
        self.assertEqual(len(sql_executor.cache), 0)

    def test_sampling_disabled_returns_full_rows(self):
        sql_executor = self.make_sql_executor(sampling_threshold=5)
        result = sql_executor.execute_with_cache(f"SELECT * FROM {TABLE}", CSV_ID)
        self.assertIsInstance(result, ExecutedResult)
        self.assertEqual(len(result.data), 20)

    def test_sampling_enabled_large_result(self):
        sql_executor = self.make_sql_executor(
            sampling_enabled=True,
            sampling_threshold=10,
            sample_max_rows=5,
        )
        result = sql_executor.execute_with_cache(f"SELECT * FROM {TABLE}", CSV_ID)

        self.assertIsInstance(result, SampledResult)
        self.assertEqual(result.total_rows, 20)
        self.assertEqual(result.sample_size, 5)
        self.assertEqual(len(result.sample_data), 5)
        amount = next(s for s in result.statistics if s.name == "amount")
        self.assertEqual(amount.max, 200.0)

        data = result.to_dict()
        self.assertTrue(data["sampled"])
        self.assertIn("5 representative rows out of 20", data["note"])

    def test_profile_table(self):
        sql_executor = self.make_sql_executor(sample_max_rows=5)
        profile = sql_executor.profile_table(CSV_ID)

        self.assertEqual(profile.total_rows, 20)
        self.assertTrue(profile.sampled)
        self.assertEqual(profile.columns, ["id", "region", "amount"])
        types = {s.name: s.type for s in profile.statistics}
        self.assertEqual(types, {"id": "numeric", "region": "text", "amount": "numeric"})

    def test_profile_table_rejects_unsafe_identifier(self):
        sql_executor = self.make_sql_executor()
        with self.assertRaises(QueryValidationError):
            sql_executor.profile_table("x; DROP TABLE y")

    def test_clear_cache(self):
        sql_executor = self.make_sql_executor()
        sql_executor.execute_with_cache(f"SELECT * FROM {TABLE}", CSV_ID)
        self.assertEqual(sql_executor.clear_cache(CSV_ID), 1)
        self.assertEqual(sql_executor.clear_cache(), 0)


if __name__ == "__main__":
    unittest.main()

"""
QueryGuard - Guarded SQL Execution
==================================

Runs validated, read-only queries against the dataset store.

QueryExecutor (execution engine):
- Appends LIMIT <max_rows> when the query has none; caps fetched rows
- Borrows a pooled connection and ALWAYS returns it (success/error/timeout)
- Races the statement against a watchdog; on expiry the in-flight driver
  call is cancelled (psycopg2 cancel() / sqlite3 interrupt()) so the pooled
  connection is freed promptly, and partial rows are discarded
- On PostgreSQL the transaction is also READ ONLY with a statement_timeout

SQLExecutor (tool-facing facade):
- Table identity check -> validation -> result cache -> execution
- Optional stratified sampling of large result sets
- Never raises: every failure becomes a FailedResult
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import sqlparse
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from config import GuardSettings
from data_sampler import DataSampler, StratifiedSample
from guard_errors import (
    QueryExecutionError,
    QueryGuardError,
    QueryTimeoutError,
    QueryValidationError,
    TableMismatchError,
    ValidationErrorCode,
)
from query_cache import ResultCache
from query_results import CachedResult, ExecutedResult, FailedResult, QueryResult, SampledResult
from sql_validator import QueryValidator, enforce_row_limit, is_safe_identifier, sanitize_table_identity

logger = logging.getLogger(__name__)

_READ_STATEMENT_TYPES = ("SELECT", "UNKNOWN")
_CANCELLED_ERRORS = ("QueryCanceled", "QueryCanceledError")


@dataclass
class ExecutionResult:
    """Rows returned by a single successful execution."""
    rows: List[Dict[str, Any]]
    row_count: int
    columns: List[str]
    execution_time_ms: float
    sql: str
    truncated: bool = False


def create_database_engine(settings: GuardSettings) -> Engine:
    """Pooled SQLAlchemy engine for the dataset store."""
    if not settings.database_url:
        raise ValueError("DATABASE_URL not found in environment variables!")

    if settings.database_url.startswith("sqlite"):
        return create_engine(
            settings.database_url,
            connect_args={"check_same_thread": False},
        )

    return create_engine(
        settings.database_url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_pre_ping=True,
    )


# =============================================================================
# EXECUTION ENGINE
# =============================================================================

class QueryExecutor:
    """Stateless, read-only statement runner over a connection pool."""

    def __init__(self, engine: Engine, max_rows: int = 10_000, timeout_seconds: float = 30.0):
        self.engine = engine
        self.max_rows = max_rows
        self.timeout_seconds = timeout_seconds
        self._stats_lock = threading.Lock()
        self._stats = {"executions": 0, "failures": 0, "timeouts": 0}

    def execute(
        self,
        sql: str,
        table_name: str,
        max_rows: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> ExecutionResult:
        """
        Execute a validated query.

        Args:
            sql: Query that already passed QueryValidator
            table_name: Canonical table the query targets (for logging)
            max_rows: Row cap (defaults to executor setting)
            timeout_seconds: Deadline (defaults to executor setting)

        Returns:
            ExecutionResult

        Raises:
            QueryValidationError: Statement is not a read
            QueryTimeoutError: Deadline hit; statement cancelled
            QueryExecutionError: Driver-level failure
        """
        max_rows = max_rows or self.max_rows
        timeout = timeout_seconds or self.timeout_seconds

        self._ensure_read_only(sql)
        bounded_sql = enforce_row_limit(sql, max_rows).sql

        self._bump("executions")
        timed_out = threading.Event()
        start = time.perf_counter()

        try:
            with self.engine.connect() as conn:
                watchdog = threading.Timer(
                    timeout,
                    self._cancel,
                    args=(conn.connection.dbapi_connection, timed_out, table_name, timeout),
                )
                watchdog.daemon = True
                watchdog.start()
                try:
                    self._prepare_transaction(conn, timeout)
                    result = conn.exec_driver_sql(
                        bounded_sql,
                        execution_options={"no_parameters": True},
                    )
                    columns = list(result.keys())
                    fetched = result.fetchmany(max_rows)
                    rows = [dict(row._mapping) for row in fetched]
                finally:
                    watchdog.cancel()
                    # A cancel already in flight must finish before the
                    # connection goes back to the pool
                    watchdog.join()
        except DBAPIError as e:
            # QueryCanceled: server-side statement_timeout fired first
            if timed_out.is_set() or type(e.orig).__name__ in _CANCELLED_ERRORS:
                self._bump("timeouts")
                raise QueryTimeoutError(timeout) from e
            self._bump("failures")
            message = str(e.orig) if e.orig is not None else str(e)
            logger.error(f"[EXECUTOR] Query execution failed on {table_name}: {message}")
            raise QueryExecutionError(message) from e
        except SQLAlchemyError as e:
            self._bump("failures")
            logger.error(f"[EXECUTOR] Query execution failed on {table_name}: {e}")
            raise QueryExecutionError(str(e)) from e

        if timed_out.is_set():
            # Watchdog fired as the statement completed; treat as timeout
            self._bump("timeouts")
            raise QueryTimeoutError(timeout)

        execution_time_ms = round((time.perf_counter() - start) * 1000, 2)
        truncated = len(rows) >= max_rows
        if truncated:
            logger.warning(
                f"[EXECUTOR] Query returned maximum allowed rows ({max_rows}). "
                f"Results may be truncated."
            )

        logger.info(f"[EXECUTOR] {len(rows)} rows from {table_name} in {execution_time_ms}ms")
        return ExecutionResult(
            rows=rows,
            row_count=len(rows),
            columns=columns,
            execution_time_ms=execution_time_ms,
            sql=bounded_sql,
            truncated=truncated,
        )

    def _ensure_read_only(self, sql: str) -> None:
        """Second line of defence behind QueryValidator."""
        # Stray trailing semicolons parse as empty statements
        statements = [
            s for s in sqlparse.parse(sql)
            if str(s).strip().strip(';').strip()
        ]
        if len(statements) != 1:
            raise QueryValidationError(
                ValidationErrorCode.MULTIPLE_STATEMENTS,
                "Exactly one statement is required",
            )
        statement_type = statements[0].get_type()
        if statement_type not in _READ_STATEMENT_TYPES:
            raise QueryValidationError(
                ValidationErrorCode.FORBIDDEN_OPERATION,
                f"Only SELECT queries are allowed (statement type {statement_type})",
            )

    def _prepare_transaction(self, conn, timeout: float) -> None:
        if self.engine.dialect.name == "postgresql":
            conn.exec_driver_sql("SET TRANSACTION READ ONLY")
            conn.exec_driver_sql(f"SET LOCAL statement_timeout = {int(timeout * 1000)}")

    @staticmethod
    def _cancel(dbapi_connection, timed_out: threading.Event, table_name: str, timeout: float) -> None:
        timed_out.set()
        logger.warning(f"[EXECUTOR] Timeout after {timeout:g}s on {table_name}; cancelling statement")
        try:
            if hasattr(dbapi_connection, "cancel"):
                dbapi_connection.cancel()
            elif hasattr(dbapi_connection, "interrupt"):
                dbapi_connection.interrupt()
        except Exception as e:
            logger.error(f"[EXECUTOR] Failed to cancel running statement: {e}")

    def _bump(self, counter: str) -> None:
        with self._stats_lock:
            self._stats[counter] += 1

    def get_stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)


# =============================================================================
# CACHED EXECUTION FACADE
# =============================================================================

class SQLExecutor:
    """
    Validated, cached execution against a dataset table.

    This is the single entry point the tool layer uses; it never raises.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        cache: ResultCache,
        settings: Optional[GuardSettings] = None,
        validator: Optional[QueryValidator] = None,
        sampler: Optional[DataSampler] = None,
    ):
        self.executor = executor
        self.cache = cache
        self.settings = settings or GuardSettings()
        self.validator = validator or QueryValidator()
        self.sampler = sampler or DataSampler()

    @classmethod
    def from_settings(cls, settings: GuardSettings) -> "SQLExecutor":
        engine = create_database_engine(settings)
        executor = QueryExecutor(
            engine,
            max_rows=settings.max_rows,
            timeout_seconds=settings.timeout_seconds,
        )
        cache = ResultCache(
            max_size=settings.cache_max_size,
            ttl_seconds=settings.cache_ttl_seconds,
        )
        return cls(executor, cache, settings)

    def resolve_table(self, table_identity: str, table_name: Optional[str] = None) -> str:
        """
        Canonical table for an identity; refuses a mismatching caller-supplied name.

        Raises:
            QueryValidationError: Empty or (strict mode) non-standard identity
            TableMismatchError: table_name given and differs from the canonical form
        """
        canonical = sanitize_table_identity(table_identity, strict=self.settings.strict_table_identity)
        if table_name is not None and table_name != canonical:
            logger.warning(f"[EXECUTOR] Table mismatch: {table_name!r} vs canonical {canonical!r}")
            raise TableMismatchError("Table name does not match CSV ID")
        return canonical

    def execute_with_cache(
        self,
        query: str,
        table_identity: str,
        table_name: Optional[str] = None,
    ) -> QueryResult:
        """
        Execute query with validation, caching and optional sampling.

        Returns:
            CachedResult | ExecutedResult | SampledResult | FailedResult
        """
        try:
            canonical = self.resolve_table(table_identity, table_name)
            self.validator.validate(query, canonical).raise_for_error()
            rows, columns, execution_time_ms, from_cache = self._fetch(query, canonical)
        except QueryGuardError as e:
            return FailedResult(error=e.message, error_type=e.error_type, suggestion=e.suggestion)
        except Exception as e:
            logger.exception(f"[EXECUTOR] Unexpected failure executing query on {table_identity}")
            return FailedResult(
                error=str(e) or "Unknown error occurred",
                error_type=QueryExecutionError.error_type,
                suggestion=QueryExecutionError.default_suggestion,
            )

        if self.settings.sampling_enabled and len(rows) > self.settings.sampling_threshold:
            sample = self.sampler.sample(rows, self.settings.sample_max_rows)
            logger.info(f"[EXECUTOR] Returning stratified sample: {sample.sample_size} of {len(rows)} rows")
            return SampledResult(
                total_rows=sample.total_rows,
                sample_size=sample.sample_size,
                sampling_method=sample.sampling_method,
                statistics=sample.statistics,
                sample_data=sample.sample_rows,
                columns=columns,
                execution_time_ms=execution_time_ms,
                from_cache=from_cache,
            )

        result_cls = CachedResult if from_cache else ExecutedResult
        return result_cls(
            data=rows,
            row_count=len(rows),
            columns=columns,
            execution_time_ms=execution_time_ms,
        )

    def _fetch(self, query: str, table_name: str) -> Tuple[List[Dict[str, Any]], List[str], float, bool]:
        cached = self.cache.get(table_name, query)
        if cached is not None:
            logger.info(f"[EXECUTOR] Returning cached query results for {table_name}")
            return cached.copy_rows(), list(cached.columns), cached.execution_time_ms, True

        result = self.executor.execute(query, table_name)
        self.cache.put(
            table_name,
            query,
            rows=result.rows,
            columns=result.columns,
            execution_time_ms=result.execution_time_ms,
            row_count=result.row_count,
        )
        return result.rows, result.columns, result.execution_time_ms, False

    def profile_table(self, table_identity: str, limit: Optional[int] = None) -> StratifiedSample:
        """
        Column-awareness profile of a dataset table, always sampled.

        Raises:
            QueryGuardError: Unsafe identifier or failed execution
        """
        canonical = self.resolve_table(table_identity)
        schema = self.settings.dataset_schema
        if not is_safe_identifier(canonical) or (schema and not is_safe_identifier(schema)):
            raise QueryValidationError(
                ValidationErrorCode.INVALID_TABLE_IDENTITY,
                f"Unsafe table identifier: {canonical!r}",
            )

        limit = limit or self.settings.profile_row_limit
        qualified = f"{schema}.{canonical}" if schema else canonical
        sql = f"SELECT * FROM {qualified} LIMIT {limit}"
        self.validator.validate(sql, canonical).raise_for_error()

        rows, _, _, _ = self._fetch(sql, canonical)
        return self.sampler.sample(rows, self.settings.sample_max_rows)

    def clear_cache(self, table_identity: Optional[str] = None) -> int:
        """Clear cache for one dataset or all datasets"""
        if table_identity is None:
            return self.cache.invalidate()
        return self.cache.invalidate(sanitize_table_identity(table_identity))

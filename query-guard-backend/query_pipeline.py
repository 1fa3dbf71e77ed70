"""
GuardedQueryPipeline - Tool Boundary Orchestration

Handles one agent query against one dataset table:
- History lookup and duplicate detection (per table, serialized)
- Clause-level diff against the previous query
- Validated, cached execution (SQLExecutor)
- Last-result bookkeeping for downstream chart generation

Contains NO safety logic of its own; every rule lives in the component that
owns it. Never raises to the caller.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional

from guard_errors import DuplicateQueryError, QueryGuardError
from query_history import QueryHistoryStore
from query_results import FailedResult, QueryResult, SampledResult
from sql_diff import format_diff, safe_compare
from sql_executor import SQLExecutor

logger = logging.getLogger(__name__)


# =============================================================================
# REQUEST
# =============================================================================

@dataclass
class QueryRequest:
    """Typed replacement for the agent's loosely-typed tool arguments."""
    query: str
    table_identity: str
    table_name: Optional[str] = None
    explanation: Optional[str] = None


# =============================================================================
# PIPELINE
# =============================================================================

class GuardedQueryPipeline:
    """
    FLOW:
    1. Resolve table identity -> history key
    2. Under the table lock: previous query, diff, duplicate check, append
    3. Execute with cache (validation happens inside)
    4. Record last successful result
    5. Attach query number, diff and explanation
    """

    def __init__(self, sql_executor: SQLExecutor, history: Optional[QueryHistoryStore] = None):
        self.sql_executor = sql_executor
        self.history = history or QueryHistoryStore()

    def handle(self, request: QueryRequest) -> QueryResult:
        logger.info(f"[PIPELINE] Executing SQL query: {request.explanation or '(no explanation)'}")

        try:
            table_name = self.sql_executor.resolve_table(request.table_identity)
        except QueryGuardError as e:
            return FailedResult(
                error=e.message,
                error_type=e.error_type,
                suggestion=e.suggestion,
                query_number=0,
            )

        with self.history.lock_for(table_name):
            previous_query = self.history.last_query(table_name)
            diff = safe_compare(previous_query, request.query)
            formatted_diff = format_diff(diff) if diff else None

            if previous_query is not None and previous_query.strip() == request.query.strip():
                query_number = self.history.count(table_name)
                logger.warning(
                    f"[PIPELINE] Identical query submitted twice on {table_name} "
                    f"(query #{query_number + 1}); not executing"
                )
                duplicate = DuplicateQueryError(query_number)
                return FailedResult(
                    error=duplicate.message,
                    error_type=duplicate.error_type,
                    suggestion=duplicate.suggestion,
                    query_number=query_number,
                    diff=formatted_diff,
                )

            query_number = self.history.append(table_name, request.query)

        if diff is not None and diff.unified_diff:
            logger.info(f"[PIPELINE] SQL query changed:\n{formatted_diff}")

        result = self.sql_executor.execute_with_cache(
            request.query,
            request.table_identity,
            request.table_name,
        )

        if isinstance(result, FailedResult):
            return replace(result, query_number=query_number, diff=formatted_diff)

        if isinstance(result, SampledResult):
            self.history.record_result(table_name, request.query, result.sample_data, result.total_rows)
        else:
            self.history.record_result(table_name, request.query, result.data, result.row_count)

        return replace(
            result,
            query_number=query_number,
            diff=formatted_diff,
            explanation=request.explanation,
        )

"""
QueryGuard - Error Taxonomy
===========================

Every failure the guarded pipeline can produce is one of these exceptions.
Components below the tool boundary RAISE them; the tool boundary
(SQLExecutor / GuardedQueryPipeline) converts them into structured
failure results so the agent layer never sees a raw exception.

    QueryGuardError
    ├── QueryValidationError   (empty / forbidden op / multi-statement / ...)
    ├── TableMismatchError     (table name != canonical form of identity)
    ├── DuplicateQueryError    (identical to previous query on the table)
    ├── QueryTimeoutError      (watchdog cancelled the statement)
    └── QueryExecutionError    (driver-level failure)
"""

from enum import Enum
from typing import Optional


class ValidationErrorCode(str, Enum):
    """Reasons a query is rejected before touching the database."""
    EMPTY_QUERY = "EmptyQuery"
    FORBIDDEN_OPERATION = "ForbiddenOperation"
    MULTIPLE_STATEMENTS = "MultipleStatements"
    INVALID_START = "InvalidStart"
    SYSTEM_TABLE_ACCESS = "SystemTableAccess"
    SUSPICIOUS_PATTERN = "SuspiciousPattern"
    INVALID_TABLE_IDENTITY = "InvalidTableIdentity"


class QueryGuardError(Exception):
    """Base class for all guarded-execution failures."""

    error_type = "QueryGuardError"
    default_suggestion = "Please revise the query and try again."

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion or self.default_suggestion


class QueryValidationError(QueryGuardError):
    error_type = "ValidationError"

    def __init__(
        self,
        code: ValidationErrorCode,
        message: str,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message, suggestion)
        self.code = code


class TableMismatchError(QueryGuardError):
    error_type = "TableMismatchError"
    default_suggestion = "Query the table that belongs to the selected dataset."


class DuplicateQueryError(QueryGuardError):
    error_type = "DuplicateQueryError"

    def __init__(self, query_number: int):
        super().__init__(
            "Duplicate query detected",
            suggestion=(
                f"This exact query was already executed. Check the previous results "
                f"(queryNumber: {query_number}). Do not execute the same query multiple times."
            ),
        )
        self.query_number = query_number


class QueryTimeoutError(QueryGuardError):
    error_type = "TimeoutError"
    default_suggestion = (
        "The query took too long. Add filters, aggregate with GROUP BY, "
        "or use a smaller LIMIT."
    )

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Query execution timeout after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class QueryExecutionError(QueryGuardError):
    error_type = "ExecutionError"

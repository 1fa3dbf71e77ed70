"""
QueryGuard - SQL Safety Validation Layer
========================================

PURPOSE:
This module rejects unsafe or malformed SQL before anything touches the
database, resolves dataset identifiers to canonical table names, and bounds
the number of rows a query may return.

PROBLEM STATEMENT:
- An automated agent writes SQL against a dynamically-named dataset table
- The agent may emit DDL/DML, stacked statements, or query system catalogs
- The backing store must never observe a write or an unbounded scan

SOLUTION:
A pre-execution validation layer that:
1. Scans the raw text for forbidden keywords (whole words, any case)
2. Rejects stacked statements
3. Requires the query to start with SELECT or WITH
4. Rejects system catalog access and known injection markers
5. Maps dataset identifiers onto an allow-listed table naming scheme

WHAT THIS IS NOT:
- NOT a SQL parser (pure regex / substring checks)
- NOT schema-aware (operates on SQL text only)
- NOT immune to keywords inside string literals or comments: a literal
  such as 'please update me' is rejected, and that is accepted behavior

ARCHITECTURAL POSITION:
    Agent SQL -> [SQL SAFETY VALIDATION] -> Result Cache -> Database
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from guard_errors import QueryValidationError, ValidationErrorCode

logger = logging.getLogger(__name__)


# =============================================================================
# QUERY VALIDATION
# =============================================================================

@dataclass
class ValidationResult:
    """
    Result of query validation.

    Attributes:
        valid: Whether the query passed every rule
        sql: The original query text
        error_code: Which rule failed (None if valid)
        error_message: Human-readable reason (None if valid)
    """
    valid: bool
    sql: str
    error_code: Optional[ValidationErrorCode] = None
    error_message: Optional[str] = None

    def raise_for_error(self) -> None:
        """Raise QueryValidationError if the query was rejected."""
        if not self.valid:
            raise QueryValidationError(
                self.error_code,
                self.error_message,
                suggestion=_SUGGESTIONS.get(self.error_code),
            )


_SUGGESTIONS = {
    ValidationErrorCode.EMPTY_QUERY: "Provide a SELECT query.",
    ValidationErrorCode.FORBIDDEN_OPERATION: (
        "Only read-only SELECT queries are allowed. Remove any data or schema "
        "modification keywords."
    ),
    ValidationErrorCode.MULTIPLE_STATEMENTS: "Send one statement per call.",
    ValidationErrorCode.INVALID_START: "Start the query with SELECT or WITH.",
    ValidationErrorCode.SYSTEM_TABLE_ACCESS: "Query only the dataset table.",
    ValidationErrorCode.SUSPICIOUS_PATTERN: (
        "Remove identifiers containing 'xp_' or 'sp_' (alias the column instead)."
    ),
}


class QueryValidator:
    """
    Lexical guard for agent-written SQL.

    Rules are applied in order and the first failure wins. The table identity
    is accepted for interface stability; table ownership is enforced by the
    executor through sanitize_table_identity().
    """

    FORBIDDEN_PATTERN = re.compile(
        r'\b(DROP|DELETE|UPDATE|INSERT|TRUNCATE|ALTER|CREATE|GRANT|REVOKE|EXECUTE|CALL)\b',
        re.IGNORECASE
    )
    ALLOWED_STARTS = ("SELECT", "WITH")
    SYSTEM_TABLE_MARKERS = ("pg_", "information_schema")
    INJECTION_MARKERS = ("xp_", "sp_")

    def validate(self, sql: str, table_identity: Optional[str] = None) -> ValidationResult:
        """
        Validate SQL for read-only, single-statement safety.

        Args:
            sql: Raw SQL text from the agent
            table_identity: Canonical table the query targets

        Returns:
            ValidationResult (valid=False carries the failing rule)
        """
        if not sql or not sql.strip():
            return self._reject(sql, ValidationErrorCode.EMPTY_QUERY, "Query cannot be empty")

        match = self.FORBIDDEN_PATTERN.search(sql)
        if match:
            return self._reject(
                sql,
                ValidationErrorCode.FORBIDDEN_OPERATION,
                f"Only SELECT queries are allowed (found {match.group(1).upper()})",
            )

        statements = [s for s in sql.split(";") if s.strip()]
        if len(statements) > 1:
            return self._reject(
                sql,
                ValidationErrorCode.MULTIPLE_STATEMENTS,
                "Multiple statements are not allowed",
            )

        normalized = sql.strip().upper()
        if not normalized.startswith(self.ALLOWED_STARTS):
            return self._reject(
                sql,
                ValidationErrorCode.INVALID_START,
                "Query must start with SELECT or WITH clause",
            )

        lowered = sql.lower()
        if any(marker in lowered for marker in self.SYSTEM_TABLE_MARKERS):
            return self._reject(
                sql,
                ValidationErrorCode.SYSTEM_TABLE_ACCESS,
                "Access to system tables is not allowed",
            )

        if any(marker in sql for marker in self.INJECTION_MARKERS):
            return self._reject(
                sql,
                ValidationErrorCode.SUSPICIOUS_PATTERN,
                "Potential SQL injection detected",
            )

        logger.debug(f"[VALIDATOR] Query accepted for {table_identity or 'unknown table'}")
        return ValidationResult(valid=True, sql=sql)

    def _reject(self, sql: str, code: ValidationErrorCode, message: str) -> ValidationResult:
        logger.warning(f"[VALIDATOR] Rejected ({code.value}): {message}")
        return ValidationResult(valid=False, sql=sql, error_code=code, error_message=message)


# =============================================================================
# TABLE IDENTITY SANITIZATION
# =============================================================================
# Dataset tables are created by the upload flow under one of three names:
#   UUID id             3f2a...-...-...  -> csv_3f2a..._..._...
#   timestamp + random  1763234493594_w0ydhk -> csv_1763234493594_w0ydhk
#   already canonical   csv_1763234493594_w0ydhk (unchanged)
# =============================================================================

TABLE_PREFIX = "csv_"

_UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE
)
_TIMESTAMP_PATTERN = re.compile(r'^[0-9]+_[a-z0-9]+$', re.IGNORECASE)
_FULL_NAME_PATTERN = re.compile(r'^csv_[0-9]+_[a-z0-9]+$', re.IGNORECASE)
_SAFE_IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9_]+$')
_CANONICAL_UUID_PATTERN = re.compile(
    r'^csv_[0-9a-f]{8}_[0-9a-f]{4}_[0-9a-f]{4}_[0-9a-f]{4}_[0-9a-f]{12}$',
    re.IGNORECASE
)


def sanitize_table_identity(raw_id: str, strict: bool = False) -> str:
    """
    Map a dataset identifier to its canonical table name.

    Idempotent: sanitize_table_identity(sanitize_table_identity(x)) equals
    sanitize_table_identity(x).

    Args:
        raw_id: Opaque dataset identifier from the orchestration layer
        strict: Refuse identifiers outside the three known shapes

    Returns:
        Canonical csv_-prefixed table name

    Raises:
        QueryValidationError: Empty id, or non-standard id in strict mode
    """
    if not raw_id or not raw_id.strip():
        raise QueryValidationError(
            ValidationErrorCode.INVALID_TABLE_IDENTITY,
            "Table identity cannot be empty",
            suggestion="Select a dataset before querying.",
        )

    raw_id = raw_id.strip()

    if _UUID_PATTERN.match(raw_id):
        return f"{TABLE_PREFIX}{raw_id.replace('-', '_')}"
    if _TIMESTAMP_PATTERN.match(raw_id):
        return f"{TABLE_PREFIX}{raw_id}"
    if _FULL_NAME_PATTERN.match(raw_id) or _CANONICAL_UUID_PATTERN.match(raw_id):
        return raw_id

    if strict:
        raise QueryValidationError(
            ValidationErrorCode.INVALID_TABLE_IDENTITY,
            f"Non-standard table identity: {raw_id!r}",
            suggestion="Use the dataset id issued by the upload flow.",
        )

    logger.warning(f"[VALIDATOR] Non-standard table identity {raw_id!r}; using as-is")
    return raw_id if raw_id.startswith(TABLE_PREFIX) else f"{TABLE_PREFIX}{raw_id}"


def is_safe_identifier(name: str) -> bool:
    """True when name can be interpolated into SQL as a bare identifier."""
    return bool(name) and bool(_SAFE_IDENTIFIER_PATTERN.match(name))


# =============================================================================
# ROW LIMIT ENFORCEMENT
# =============================================================================

@dataclass
class LimitEnforcementResult:
    """
    Result of LIMIT enforcement.

    Attributes:
        sql: The SQL with LIMIT enforced
        limit_applied: Whether a new LIMIT was appended
        original_limit: The LIMIT value already present (if any)
        enforced_limit: The LIMIT the query now carries
    """
    sql: str
    limit_applied: bool
    original_limit: Optional[int]
    enforced_limit: int


_LIMIT_PATTERN = re.compile(r'\bLIMIT\s+(\d+)', re.IGNORECASE)


def extract_limit(sql: str) -> Optional[int]:
    """
    Extract the LIMIT value from a SQL query.

    Returns None if no LIMIT clause is present.
    """
    if not sql:
        return None
    match = _LIMIT_PATTERN.search(sql)
    if match:
        return int(match.group(1))
    return None


def enforce_row_limit(sql: str, max_rows: int) -> LimitEnforcementResult:
    """
    Append LIMIT <max_rows> when the query carries no LIMIT. Idempotent.

    Existing LIMIT values are left untouched; the executor caps fetched rows
    independently.
    """
    if max_rows <= 0:
        raise ValueError(f"max_rows must be a positive integer, got {max_rows}")

    sql = sql.strip()
    existing = extract_limit(sql)
    if existing is not None:
        return LimitEnforcementResult(
            sql=sql,
            limit_applied=False,
            original_limit=existing,
            enforced_limit=existing,
        )

    bounded = f"{sql.rstrip(';').rstrip()} LIMIT {max_rows}"
    logger.info(f"[BOUNDING] Injected LIMIT {max_rows}")
    return LimitEnforcementResult(
        sql=bounded,
        limit_applied=True,
        original_limit=None,
        enforced_limit=max_rows,
    )


# Module-level singleton; the validator holds no state.
_default_validator = QueryValidator()


def validate_query(sql: str, table_identity: Optional[str] = None) -> ValidationResult:
    """Convenience function to validate a query."""
    return _default_validator.validate(sql, table_identity)

"""
QueryGuard - SQL Diff Tracker
=============================

Compares successive queries an agent issues against the same table and
reports what changed, clause by clause, as a unified diff.

PROBLEM STATEMENT:
- Agents refine queries iteratively ("now group by month", "sort by total")
- While rewriting, they frequently drop a filter that was already applied
- The result still "looks right", so the loss goes unnoticed

SOLUTION:
Diff the previous and current query per canonical clause
(SELECT, FROM, WHERE, GROUP BY, ORDER BY, LIMIT) and flag filter losses as
CRITICAL. The output uses the familiar `---/+++/@@` unified diff shape so a
language model can read it without extra instructions.

Example:
    --- Previous Query
    +++ Current Query

    @@ WHERE clause @@
    -WHERE BRANCH_NAME = 'EAST'

    !!! CRITICAL CHANGES !!!
    ! CRITICAL: Entire WHERE clause was removed!
    ! FILTER LOST: branch_name = 'east'

    1 line(s) changed - 2 CRITICAL

WHAT THIS IS NOT:
- NOT a SQL parser (keyword positions only; subqueries and CTEs with their
  own clauses can confuse clause boundaries)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

CLAUSES = ("SELECT", "FROM", "WHERE", "GROUP BY", "ORDER BY", "LIMIT")

_CLAUSE_PATTERNS = {
    clause: re.compile(r'\b' + clause.replace(' ', r'\s+') + r'\b')
    for clause in CLAUSES
}
_WHERE_SPLIT = re.compile(r'\s+AND\s+|\s+OR\s+', re.IGNORECASE)
_WHITESPACE = re.compile(r'\s+')

# Filter-loss heuristics run on whitespace-normalized, original-case text
_BRANCH_FILTER = re.compile(r"\bbranch_name\s*=\s*'([^']+)'", re.IGNORECASE)
_DATE_FILTER = re.compile(
    r"(sale_date|date|created_at)\s*(>=|<=|<>|!=|=|>|<)\s*('[^']*'|[^\s)]+)",
    re.IGNORECASE
)

IDENTICAL_SUMMARY = "No changes - query is identical"
NO_DIFF_MESSAGE = "(First query - no diff available)"


@dataclass
class QueryDiff:
    """Clause-level diff between two successive queries."""
    previous: str
    current: str
    unified_diff: str
    critical_changes: List[str] = field(default_factory=list)
    summary: str = ""

    @property
    def has_critical_changes(self) -> bool:
        return bool(self.critical_changes)


class SQLDiffTracker:
    """Stateless clause-level comparator for SQL queries."""

    @classmethod
    def compare(cls, previous_query: Optional[str], current_query: str) -> Optional[QueryDiff]:
        """
        Compare two SQL queries.

        Args:
            previous_query: Prior query on the same table (None for the first)
            current_query: Query about to run

        Returns:
            QueryDiff, or None when there is no previous query
        """
        if not previous_query:
            return None

        if previous_query.strip() == current_query.strip():
            return QueryDiff(
                previous=previous_query,
                current=current_query,
                unified_diff="",
                critical_changes=[],
                summary=IDENTICAL_SUMMARY,
            )

        prev = previous_query.strip().upper()
        curr = current_query.strip().upper()
        critical_changes: List[str] = []
        diff_lines: List[str] = []

        for clause in CLAUSES:
            prev_clause = cls.extract_clause(prev, clause)
            curr_clause = cls.extract_clause(curr, clause)

            if prev_clause == curr_clause:
                continue

            diff_lines.append(f"@@ {clause} clause @@")

            if prev_clause and not curr_clause:
                diff_lines.append(f"-{clause} {prev_clause}")
                if clause == "WHERE":
                    critical_changes.append("CRITICAL: Entire WHERE clause was removed!")
            elif curr_clause and not prev_clause:
                diff_lines.append(f"+{clause} {curr_clause}")
            elif prev_clause and curr_clause:
                prev_parts = cls.split_clause_parts(prev_clause, clause)
                curr_parts = cls.split_clause_parts(curr_clause, clause)

                for part in prev_parts:
                    if part not in curr_parts:
                        diff_lines.append(f"-  {part}")
                for part in curr_parts:
                    if part not in prev_parts:
                        diff_lines.append(f"+  {part}")

            diff_lines.append("")

        critical_changes.extend(cls.detect_filter_losses(previous_query, current_query))

        change_count = sum(1 for line in diff_lines if line.startswith(("-", "+")))
        summary = f"{change_count} line(s) changed"
        if critical_changes:
            summary += f" - {len(critical_changes)} CRITICAL"

        if critical_changes:
            logger.warning(f"[DIFF] {len(critical_changes)} critical change(s): {'; '.join(critical_changes)}")

        return QueryDiff(
            previous=previous_query,
            current=current_query,
            unified_diff="\n".join(diff_lines),
            critical_changes=critical_changes,
            summary=summary,
        )

    @staticmethod
    def extract_clause(query: str, clause: str) -> Optional[str]:
        """
        Text of `clause` in an upper-cased query, up to the next later clause
        keyword present (or end of string). None when the clause is absent.
        """
        match = _CLAUSE_PATTERNS[clause].search(query)
        if not match:
            return None

        start = match.end()
        end = len(query)
        for later in CLAUSES[CLAUSES.index(clause) + 1:]:
            later_match = _CLAUSE_PATTERNS[later].search(query, start)
            if later_match and later_match.start() < end:
                end = later_match.start()

        return query[start:end].strip().rstrip(";").strip()

    @staticmethod
    def split_clause_parts(clause_text: str, clause: str) -> List[str]:
        """Split a clause into atomic parts for part-level diffing."""
        if clause == "WHERE":
            parts = _WHERE_SPLIT.split(clause_text)
        elif clause in ("SELECT", "GROUP BY", "ORDER BY"):
            parts = clause_text.split(",")
        else:
            return [clause_text]
        return [part.strip() for part in parts if part.strip()]

    @staticmethod
    def detect_filter_losses(previous_query: str, current_query: str) -> List[str]:
        """Literal heuristics for branch and date filters that disappeared."""
        prev = _WHITESPACE.sub(" ", previous_query.strip())
        curr = _WHITESPACE.sub(" ", current_query.strip())
        losses: List[str] = []

        prev_branch = _BRANCH_FILTER.search(prev)
        if prev_branch and not _BRANCH_FILTER.search(curr):
            losses.append(f"FILTER LOST: branch_name = '{prev_branch.group(1)}'")

        prev_date = _DATE_FILTER.search(prev)
        if prev_date and not _DATE_FILTER.search(curr):
            column, operator, value = prev_date.groups()
            losses.append(f"FILTER LOST: date filter was removed ({column} {operator} {value})")

        return losses


def format_diff(diff: Optional[QueryDiff]) -> str:
    """Render a diff for consumption by the agent."""
    if diff is None:
        return NO_DIFF_MESSAGE

    if not diff.unified_diff:
        return diff.summary

    output = "--- Previous Query\n+++ Current Query\n\n"
    output += diff.unified_diff

    if diff.critical_changes:
        output += "\n\n!!! CRITICAL CHANGES !!!\n"
        output += "\n".join(f"! {change}" for change in diff.critical_changes)

    output += f"\n\n{diff.summary}"
    return output


def safe_compare(previous_query: Optional[str], current_query: str) -> Optional[QueryDiff]:
    """compare() that degrades to "no diff" instead of failing the query."""
    try:
        return SQLDiffTracker.compare(previous_query, current_query)
    except Exception as e:
        logger.error(f"[DIFF] Diff computation failed, continuing without diff: {e}", exc_info=True)
        return None

"""
QueryGuard - Stratified Data Sampling
=====================================

Instead of handing every result row to the agent, large result sets are
reduced to:
- A statistical summary per column (min, max, mean, median, percentiles)
- A uniform random sample of rows (at most max_sample_rows)
- Distribution hints (distinct / null counts, mode, sample values)

Statistics are ALWAYS computed over the full row set, so numeric ranges and
percentiles are exact even when only a sample of rows is returned.

The sampler never raises: empty input yields an empty, well-formed sample.
"""

import json
import logging
import math
import random
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

logger = logging.getLogger(__name__)

COLUMN_TYPES = ("numeric", "text", "timestamp", "boolean", "unknown")
SAMPLING_METHODS = ("full", "random", "stratified")

TYPE_VOTE_THRESHOLD = 0.8
BOOLEAN_TOKENS = {"true", "false", "1", "0", "yes", "no"}
MAX_TEXT_SAMPLE_VALUES = 10


@dataclass
class ColumnStatistics:
    name: str
    type: str
    distinct_count: int
    null_count: int
    min: Optional[Any] = None
    max: Optional[Any] = None
    mean: Optional[float] = None
    median: Optional[float] = None
    mode: Optional[Any] = None
    percentile_25: Optional[float] = None
    percentile_50: Optional[float] = None
    percentile_75: Optional[float] = None
    percentile_95: Optional[float] = None
    sample_values: Optional[List[Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "type": self.type,
            "distinctCount": self.distinct_count,
            "nullCount": self.null_count,
        }
        optional = {
            "min": self.min,
            "max": self.max,
            "mean": self.mean,
            "median": self.median,
            "mode": self.mode,
            "percentile25": self.percentile_25,
            "percentile50": self.percentile_50,
            "percentile75": self.percentile_75,
            "percentile95": self.percentile_95,
            "sampleValues": self.sample_values,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass
class StratifiedSample:
    total_rows: int
    columns: List[str]
    statistics: List[ColumnStatistics]
    sample_rows: List[Dict[str, Any]]
    sample_size: int
    sampled: bool
    sampling_method: str = "full"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRows": self.total_rows,
            "columns": list(self.columns),
            "statistics": [stat.to_dict() for stat in self.statistics],
            "sampleRows": self.sample_rows,
            "sampleSize": self.sample_size,
            "sampled": self.sampled,
            "samplingMethod": self.sampling_method,
        }


# =============================================================================
# VALUE CLASSIFICATION
# =============================================================================

def _as_number(value: Any) -> Optional[float]:
    """Numeric value of `value`, or None if it does not read as a number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    if isinstance(value, str) and number.is_integer() and "." not in value and "e" not in value.lower():
        return int(number)
    return number


def _is_boolean_token(value: Any) -> bool:
    return isinstance(value, bool) or str(value).strip().lower() in BOOLEAN_TOKENS


def _is_timestamp(value: Any) -> bool:
    if isinstance(value, (datetime, date, pd.Timestamp)):
        return True
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        parsed = pd.to_datetime(value, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return False
    return not pd.isna(parsed)


def _hashable(value: Any) -> Any:
    """Stable key for counting values that may be unhashable (dicts, lists)."""
    try:
        hash(value)
        return value
    except TypeError:
        return repr(value)


def infer_column_type(values: Sequence[Any]) -> str:
    """
    Majority vote over non-null values:
    numeric, else boolean, else timestamp, else text (>= 80% each).
    """
    non_null = [v for v in values if v is not None]
    if not non_null:
        return "unknown"

    total = len(non_null)
    numeric_count = sum(1 for v in non_null if _as_number(v) is not None)
    if numeric_count / total >= TYPE_VOTE_THRESHOLD:
        return "numeric"

    boolean_count = sum(1 for v in non_null if _is_boolean_token(v))
    if boolean_count / total >= TYPE_VOTE_THRESHOLD:
        return "boolean"

    timestamp_count = sum(1 for v in non_null if _is_timestamp(v))
    if timestamp_count / total >= TYPE_VOTE_THRESHOLD:
        return "timestamp"

    return "text"


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """
    Linear-interpolated percentile of an ascending sequence.

    index = p/100 * (n-1); interpolate between floor(index) and ceil(index).
    percentile([1, 2, 3, 4], 50) == 2.5
    """
    if not sorted_values:
        raise ValueError("percentile of empty sequence")
    index = (p / 100) * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    weight = index - lower

    if lower == upper:
        return sorted_values[lower]

    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def mode(values: Sequence[Any]) -> Any:
    """Most frequent value; ties go to the value seen first."""
    if not values:
        return None
    first_seen: Dict[Any, Any] = {}
    counts: Counter = Counter()
    for value in values:
        key = _hashable(value)
        first_seen.setdefault(key, value)
        counts[key] += 1
    # most_common is stable, so equal counts keep insertion (first-seen) order
    best_key, _ = counts.most_common(1)[0]
    return first_seen[best_key]


# =============================================================================
# SAMPLER
# =============================================================================

class DataSampler:
    """Reduces result sets to a representative sample plus full statistics."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def sample(self, rows: Sequence[Dict[str, Any]], max_sample_rows: int = 50) -> StratifiedSample:
        """
        Apply stratified sampling to query results.

        Args:
            rows: Full query results
            max_sample_rows: Maximum number of sample rows to return

        Returns:
            StratifiedSample with statistics over every row
        """
        if not rows:
            return StratifiedSample(
                total_rows=0,
                columns=[],
                statistics=[],
                sample_rows=[],
                sample_size=0,
                sampled=False,
                sampling_method="full",
            )

        rows = list(rows)
        total_rows = len(rows)
        columns = list(rows[0].keys())
        statistics = self.compute_statistics(rows, columns)

        if total_rows <= max_sample_rows:
            return StratifiedSample(
                total_rows=total_rows,
                columns=columns,
                statistics=statistics,
                sample_rows=rows,
                sample_size=total_rows,
                sampled=False,
                sampling_method="full",
            )

        sample_size = min(max_sample_rows, total_rows)
        sample_rows = self._rng.sample(rows, sample_size)
        logger.info(f"[SAMPLER] Sampled {sample_size} of {total_rows} rows")

        return StratifiedSample(
            total_rows=total_rows,
            columns=columns,
            statistics=statistics,
            sample_rows=sample_rows,
            sample_size=sample_size,
            sampled=True,
            sampling_method="random",
        )

    def compute_statistics(
        self,
        rows: Sequence[Dict[str, Any]],
        columns: Sequence[str],
    ) -> List[ColumnStatistics]:
        return [self._column_statistics(name, [row.get(name) for row in rows]) for name in columns]

    def _column_statistics(self, name: str, values: List[Any]) -> ColumnStatistics:
        column_type = infer_column_type(values)
        non_null = [v for v in values if v is not None]

        stats = ColumnStatistics(
            name=name,
            type=column_type,
            distinct_count=len({_hashable(v) for v in non_null}),
            null_count=len(values) - len(non_null),
        )

        if column_type == "numeric":
            numbers = [n for n in (_as_number(v) for v in non_null) if n is not None]
            if numbers:
                ordered = sorted(numbers)
                stats.min = ordered[0]
                stats.max = ordered[-1]
                stats.mean = sum(ordered) / len(ordered)
                stats.median = percentile(ordered, 50)
                stats.percentile_25 = percentile(ordered, 25)
                stats.percentile_50 = stats.median
                stats.percentile_75 = percentile(ordered, 75)
                stats.percentile_95 = percentile(ordered, 95)
                stats.mode = mode(numbers)
        elif column_type == "text" and non_null:
            distinct = list(dict.fromkeys(_hashable(v) for v in non_null))
            stats.sample_values = distinct[:MAX_TEXT_SAMPLE_VALUES]
            stats.mode = mode(non_null)

        return stats


def format_for_llm(sample: StratifiedSample) -> str:
    """Render a stratified sample as a plain-text context block for the agent."""
    lines = [
        "Query Results Summary:",
        f"Total Rows: {sample.total_rows}",
        f"Sample Size: {sample.sample_size} rows",
        f"Sampling Method: {sample.sampling_method}",
        "",
        "Column Statistics:",
        "=" * 80,
    ]

    for stat in sample.statistics:
        lines.append("")
        lines.append(f"Column: {stat.name}")
        lines.append(f"  Type: {stat.type}")
        lines.append(f"  Distinct Values: {stat.distinct_count}")
        lines.append(f"  Null Count: {stat.null_count}")

        if stat.type == "numeric" and stat.mean is not None:
            lines.append(f"  Min: {stat.min}")
            lines.append(f"  Max: {stat.max}")
            lines.append(f"  Mean: {stat.mean:.2f}")
            lines.append(f"  Median: {stat.median:.2f}")
            lines.append(f"  25th Percentile: {stat.percentile_25:.2f}")
            lines.append(f"  75th Percentile: {stat.percentile_75:.2f}")
            lines.append(f"  95th Percentile: {stat.percentile_95:.2f}")
            lines.append(f"  Mode: {stat.mode}")
        elif stat.type == "text" and stat.sample_values:
            lines.append(f"  Sample Values: {', '.join(str(v) for v in stat.sample_values[:5])}")
            lines.append(f"  Mode: {stat.mode}")

    lines.append("")
    lines.append("=" * 80)
    lines.append("")
    lines.append(f"Sample Rows ({sample.sample_size} of {sample.total_rows}):")
    lines.append(json.dumps(sample.sample_rows, indent=2, default=str))
    return "\n".join(lines)

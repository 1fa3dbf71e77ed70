"""
Tagged results returned across the tool boundary.

Exactly one of:
    CachedResult   - served from the result cache, full rows
    ExecutedResult - freshly executed, full rows
    SampledResult  - large result reduced to a stratified sample
    FailedResult   - any failure (validation, duplicate, timeout, driver)

to_dict() produces the JSON contract the agent layer consumes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from data_sampler import ColumnStatistics


@dataclass
class _ResultBase:
    query_number: Optional[int] = field(default=None, kw_only=True)
    diff: Optional[str] = field(default=None, kw_only=True)
    explanation: Optional[str] = field(default=None, kw_only=True)

    def _session_fields(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.query_number is not None:
            data["queryNumber"] = self.query_number
        if self.diff is not None:
            data["diff"] = self.diff
        if self.explanation:
            data["explanation"] = self.explanation
        return data


@dataclass
class _RowsResult(_ResultBase):
    data: List[Dict[str, Any]]
    row_count: int
    columns: List[str]
    execution_time_ms: float

    success = True
    sampled = False
    from_cache = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "sampled": False,
            "data": self.data,
            "rowCount": self.row_count,
            "columns": self.columns,
            "executionTimeMs": self.execution_time_ms,
            "fromCache": self.from_cache,
            **self._session_fields(),
        }


@dataclass
class CachedResult(_RowsResult):
    from_cache = True


@dataclass
class ExecutedResult(_RowsResult):
    from_cache = False


@dataclass
class SampledResult(_ResultBase):
    total_rows: int
    sample_size: int
    sampling_method: str
    statistics: List[ColumnStatistics]
    sample_data: List[Dict[str, Any]]
    columns: List[str]
    execution_time_ms: float
    from_cache: bool = False

    success = True
    sampled = True

    @property
    def note(self) -> str:
        return (
            f"Results were sampled: showing {self.sample_size} representative rows out of "
            f"{self.total_rows} total. Use the statistics to understand the full dataset."
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "sampled": True,
            "totalRows": self.total_rows,
            "sampleSize": self.sample_size,
            "samplingMethod": self.sampling_method,
            "statistics": [stat.to_dict() for stat in self.statistics],
            "sampleData": self.sample_data,
            "columns": self.columns,
            "executionTimeMs": self.execution_time_ms,
            "fromCache": self.from_cache,
            "note": self.note,
            **self._session_fields(),
        }


@dataclass
class FailedResult(_ResultBase):
    error: str
    error_type: str
    suggestion: Optional[str] = None

    success = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": False,
            "error": self.error,
            "errorType": self.error_type,
        }
        if self.suggestion:
            data["suggestion"] = self.suggestion
        data.update(self._session_fields())
        return data


QueryResult = Union[CachedResult, ExecutedResult, SampledResult, FailedResult]

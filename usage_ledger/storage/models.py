"""
Data models for storage layer.

Defines usage records, per-file processing state, statistics and rollup rows.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple

from usage_ledger.core.timestamps import local_date_string

UNKNOWN_PROJECT = "Unknown Project"

# Largest value an SQLite INTEGER column can hold
MAX_TOKEN_COUNT = 2 ** 63 - 1


def project_name_from_path(project_path: str) -> str:
    """Last path component of a project path, or a placeholder when empty."""
    parts = [part for part in project_path.split("/") if part]
    return parts[-1] if parts else UNKNOWN_PROJECT


@dataclass(frozen=True)
class UsageRecord:
    """Immutable usage record produced from one log line.

    Records are never updated in place; a later record with the same
    identity key is dropped as a duplicate.
    """
    timestamp: str
    model: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    cost: float
    session_id: str
    project_path: str
    request_id: Optional[str] = None
    message_id: Optional[str] = None
    message_type: str = ""
    source_file: str = ""

    def __post_init__(self):
        """Validate counters fit the store and cost is a finite non-negative number."""
        for name in ("input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be >= 0")
            if value > MAX_TOKEN_COUNT:
                raise ValueError(f"{name} must be <= {MAX_TOKEN_COUNT}")
        if not math.isfinite(self.cost):
            raise ValueError("cost must be finite")
        if self.cost < 0:
            raise ValueError("cost must be >= 0")

    @property
    def total_tokens(self) -> int:
        """Sum of the four token counters."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def project_name(self) -> str:
        return project_name_from_path(self.project_path)

    @property
    def date_string(self) -> str:
        """Local calendar date of the record (YYYY-MM-DD)."""
        return local_date_string(self.timestamp)

    @property
    def identity_key(self) -> Optional[Tuple[str, str]]:
        """(message_id, request_id) when both are non-empty, else None."""
        if self.message_id and self.request_id:
            return (self.message_id, self.request_id)
        return None


class FileStatus(Enum):
    """Processing status of a source file."""
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class FileProcessingState:
    """One row of the jsonl_files table."""
    file_path: str
    file_name: str
    file_size: int
    last_modified: float
    last_processed: Optional[str]
    entry_count: int
    status: FileStatus
    error_message: Optional[str] = None


class DateRange(Enum):
    """Date ranges used to scope queries and rollups."""
    ALL = "all"
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"

    @property
    def days(self) -> Optional[int]:
        return {
            DateRange.ALL: None,
            DateRange.LAST_7_DAYS: 7,
            DateRange.LAST_30_DAYS: 30,
        }[self]

    def start_date(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Inclusive lower bound of the range, or None for all data."""
        if self.days is None:
            return None
        reference = now or datetime.now(timezone.utc)
        return reference - timedelta(days=self.days)


class SessionSortOrder(Enum):
    """Sort orders for the per-project session breakdown."""
    COST_DESC = "cost-desc"
    COST_ASC = "cost-asc"
    DATE_DESC = "date-desc"
    DATE_ASC = "date-asc"
    NAME_ASC = "name-asc"
    NAME_DESC = "name-desc"


@dataclass(frozen=True)
class ModelUsage:
    """Usage aggregated for one model."""
    model: str
    total_cost: float
    total_tokens: int
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    session_count: int
    request_count: int


@dataclass(frozen=True)
class DailyUsage:
    """Usage aggregated for one calendar day."""
    date: str
    total_cost: float
    total_tokens: int
    session_count: int
    models_used: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProjectUsage:
    """Usage aggregated for one project."""
    project_path: str
    project_name: str
    total_cost: float
    total_tokens: int
    session_count: int
    request_count: int
    last_used: str

    @property
    def average_cost_per_session(self) -> float:
        return self.total_cost / self.session_count if self.session_count else 0.0


@dataclass(frozen=True)
class UsageStatistics:
    """Totals plus model, day and project breakdowns for a date range."""
    total_cost: float
    total_tokens: int
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    total_sessions: int
    total_requests: int
    by_model: List[ModelUsage] = field(default_factory=list)
    by_date: List[DailyUsage] = field(default_factory=list)
    by_project: List[ProjectUsage] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "UsageStatistics":
        return cls(
            total_cost=0.0,
            total_tokens=0,
            input_tokens=0,
            output_tokens=0,
            cache_creation_tokens=0,
            cache_read_tokens=0,
            total_sessions=0,
            total_requests=0,
        )

    @property
    def is_empty(self) -> bool:
        return self.total_requests == 0 and self.total_sessions == 0

    @property
    def average_cost_per_request(self) -> float:
        return self.total_cost / self.total_requests if self.total_requests else 0.0

    @property
    def average_cost_per_session(self) -> float:
        return self.total_cost / self.total_sessions if self.total_sessions else 0.0


@dataclass(frozen=True)
class DailyStat:
    """Row of the daily_statistics rollup."""
    date_string: str
    total_cost: float
    total_tokens: int
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    session_count: int
    request_count: int
    models_used: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ModelStat:
    """Row of the model_statistics rollup."""
    model: str
    date_range: DateRange
    total_cost: float
    total_tokens: int
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    session_count: int
    request_count: int


@dataclass(frozen=True)
class ProjectStat:
    """Row of the project_statistics rollup."""
    project_path: str
    project_name: str
    date_range: DateRange
    total_cost: float
    total_tokens: int
    session_count: int
    request_count: int
    last_used: str


@dataclass(frozen=True)
class StoreSummary:
    """Row counts for every table in the store."""
    usage_entries: int
    jsonl_files: int
    daily_statistics: int
    model_statistics: int
    project_statistics: int
    files_by_status: Tuple[Tuple[str, int], ...] = ()

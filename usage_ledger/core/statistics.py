"""
In-memory statistics over parsed records.

Used when the store is empty or unavailable; mirrors the aggregate queries
of the repository.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set

from usage_ledger.storage.models import (
    DailyUsage,
    ModelUsage,
    ProjectUsage,
    SessionSortOrder,
    UsageRecord,
    UsageStatistics,
    project_name_from_path,
)


class _Accumulator:
    def __init__(self):
        self.cost = 0.0
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_creation_tokens = 0
        self.cache_read_tokens = 0
        self.requests = 0
        self.sessions: Set[str] = set()
        self.models: Set[str] = set()
        self.last_used = ""

    def add(self, record: UsageRecord) -> None:
        self.cost += record.cost
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.cache_creation_tokens += record.cache_creation_tokens
        self.cache_read_tokens += record.cache_read_tokens
        self.requests += 1
        self.sessions.add(record.session_id)
        self.models.add(record.model)
        self.last_used = max(self.last_used, record.timestamp)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_creation_tokens + self.cache_read_tokens


def filter_by_project(records: Iterable[UsageRecord], project_path: Optional[str]) -> List[UsageRecord]:
    """Keep records whose project path contains the filter text."""
    if not project_path:
        return list(records)
    return [record for record in records if project_path in record.project_path]


def _project_usage(path: str, acc: _Accumulator) -> ProjectUsage:
    return ProjectUsage(
        project_path=path,
        project_name=project_name_from_path(path),
        total_cost=acc.cost,
        total_tokens=acc.total_tokens,
        session_count=len(acc.sessions),
        request_count=acc.requests,
        last_used=acc.last_used,
    )


def calculate_statistics(records: Iterable[UsageRecord]) -> UsageStatistics:
    """Aggregate already-deduplicated records into UsageStatistics."""
    totals = _Accumulator()
    by_model: Dict[str, _Accumulator] = defaultdict(_Accumulator)
    by_date: Dict[str, _Accumulator] = defaultdict(_Accumulator)
    by_project: Dict[str, _Accumulator] = defaultdict(_Accumulator)

    for record in records:
        totals.add(record)
        by_model[record.model].add(record)
        by_date[record.date_string].add(record)
        by_project[record.project_path].add(record)

    if totals.requests == 0:
        return UsageStatistics.empty()

    models = [
        ModelUsage(
            model=model,
            total_cost=acc.cost,
            total_tokens=acc.total_tokens,
            input_tokens=acc.input_tokens,
            output_tokens=acc.output_tokens,
            cache_creation_tokens=acc.cache_creation_tokens,
            cache_read_tokens=acc.cache_read_tokens,
            session_count=len(acc.sessions),
            request_count=acc.requests,
        )
        for model, acc in by_model.items()
    ]
    models.sort(key=lambda usage: usage.total_cost, reverse=True)

    days = [
        DailyUsage(
            date=date,
            total_cost=acc.cost,
            total_tokens=acc.total_tokens,
            session_count=len(acc.sessions),
            models_used=sorted(acc.models),
        )
        for date, acc in sorted(by_date.items())
    ]

    projects = sort_sessions(
        [_project_usage(path, acc) for path, acc in by_project.items()],
        SessionSortOrder.COST_DESC,
    )

    return UsageStatistics(
        total_cost=totals.cost,
        total_tokens=totals.total_tokens,
        input_tokens=totals.input_tokens,
        output_tokens=totals.output_tokens,
        cache_creation_tokens=totals.cache_creation_tokens,
        cache_read_tokens=totals.cache_read_tokens,
        total_sessions=len(totals.sessions),
        total_requests=totals.requests,
        by_model=models,
        by_date=days,
        by_project=projects,
    )


def sort_sessions(projects: List[ProjectUsage], order: SessionSortOrder) -> List[ProjectUsage]:
    """Sort a per-project breakdown."""
    if order in (SessionSortOrder.COST_DESC, SessionSortOrder.COST_ASC):
        key = lambda usage: usage.total_cost
    elif order in (SessionSortOrder.DATE_DESC, SessionSortOrder.DATE_ASC):
        key = lambda usage: usage.last_used
    else:
        key = lambda usage: usage.project_name.lower()
    descending = order in (SessionSortOrder.COST_DESC, SessionSortOrder.DATE_DESC, SessionSortOrder.NAME_DESC)
    return sorted(projects, key=key, reverse=descending)

"""
Hybrid read path.

Statistics are served from the store when it holds data. When the store is
empty, or fails in a way the error policy marks recoverable, they are
recomputed directly from the log files.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from usage_ledger.storage.models import (
    DateRange,
    ProjectUsage,
    SessionSortOrder,
    UsageRecord,
    UsageStatistics,
)
from usage_ledger.storage.repository import UsageRepository
from .access import DirectoryAccessBroker
from .dedup import dedupe
from .errors import ErrorDisposition, classify_error
from .ingestion import FileOrder, IngestionCoordinator
from .statistics import calculate_statistics, filter_by_project, sort_sessions

LOGGER = logging.getLogger(__name__)


class DataSource(Enum):
    """Where the last answer came from."""
    STORE = "store"
    FILES = "files"


class HybridUsageService:
    """Store-first statistics with file recomputation as fallback.

    Args:
        repository: Primary source
        coordinator: Parser used by the fallback path
        broker: Supplies the projects root for the fallback path
    """

    def __init__(
        self,
        repository: UsageRepository,
        coordinator: IngestionCoordinator,
        broker: DirectoryAccessBroker,
    ):
        self.repository = repository
        self.coordinator = coordinator
        self.broker = broker
        self.last_source: Optional[DataSource] = None
        self._schema_ready = False

    def get_statistics(
        self,
        date_range: DateRange = DateRange.ALL,
        project_path: Optional[str] = None,
    ) -> UsageStatistics:
        """Usage statistics for a date range and optional project filter.

        Raises:
            StoreError: If the store fails with a fatal error kind
            PreconditionError: If the fallback cannot reach the projects root
        """
        try:
            if self._store_has_data():
                statistics = self.repository.get_usage_statistics(date_range, project_path)
                self.last_source = DataSource.STORE
                return statistics
            LOGGER.info("Usage store is empty, computing statistics from log files")
        except Exception as e:
            self._raise_if_fatal(e)
            LOGGER.warning("Usage store unavailable, falling back to log files: %s", e)

        records = filter_by_project(self._load_records(date_range), project_path)
        self.last_source = DataSource.FILES
        return calculate_statistics(records)

    def get_session_breakdown(
        self,
        date_range: DateRange = DateRange.ALL,
        sort_order: SessionSortOrder = SessionSortOrder.COST_DESC,
    ) -> List[ProjectUsage]:
        """Per-project breakdown sorted by the requested order."""
        try:
            if self._store_has_data():
                sessions = self.repository.get_session_statistics(date_range, sort_order)
                self.last_source = DataSource.STORE
                return sessions
        except Exception as e:
            self._raise_if_fatal(e)
            LOGGER.warning("Usage store unavailable, falling back to log files: %s", e)

        statistics = calculate_statistics(self._load_records(date_range))
        self.last_source = DataSource.FILES
        return sort_sessions(statistics.by_project, sort_order)

    def validate_access(self) -> bool:
        """True when either the store or the projects directory can be read."""
        try:
            self._ensure_schema()
            self.repository.count_usage_records()
            return True
        except Exception as e:
            LOGGER.debug("Store not readable: %s", e)
        return self.broker.has_access()

    def data_source(self) -> DataSource:
        """Source the next query would use, without running it."""
        try:
            return DataSource.STORE if self._store_has_data() else DataSource.FILES
        except Exception as e:
            self._raise_if_fatal(e)
            return DataSource.FILES

    def _store_has_data(self) -> bool:
        self._ensure_schema()
        return self.repository.count_usage_records() > 0

    def _ensure_schema(self) -> None:
        if not self._schema_ready:
            self.repository.initialize_schema()
            self._schema_ready = True

    def _load_records(self, date_range: DateRange) -> List[UsageRecord]:
        root = self.broker.resolve_root()
        start = end = None
        if date_range is not DateRange.ALL:
            end = datetime.now(timezone.utc)
            start = date_range.start_date(end)
        result = self.coordinator.parse_directory(
            root, start=start, end=end, order=FileOrder.LARGEST_FIRST
        )
        return dedupe(result.records)

    @staticmethod
    def _raise_if_fatal(error: Exception) -> None:
        if classify_error(error) is ErrorDisposition.FATAL:
            LOGGER.error("Fatal store error, not falling back: %s", error)
            raise error

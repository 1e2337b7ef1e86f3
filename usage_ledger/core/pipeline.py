"""
Ingestion runs.

A run discovers log files, parses them concurrently, drops identity-key
duplicates, inserts the survivors in batches, tracks per-file state and
finally regenerates the rollups.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from usage_ledger.storage.errors import StoreError
from usage_ledger.storage.repository import UsageRepository
from .access import DirectoryAccessBroker
from .cancellation import CancellationToken, checkpoint
from .dedup import Deduplicator
from .errors import SyncError, SyncErrorKind, is_fatal
from .ingestion import FileOrder, FileOutcome, IngestionCoordinator, SourceFile, discover_files
from .parser import DEFAULT_BATCH_SIZE

LOGGER = logging.getLogger(__name__)


class SyncType(Enum):
    """Kinds of ingestion run."""
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass
class SyncReport:
    """Outcome of one ingestion run."""
    sync_type: SyncType
    started_at: datetime
    finished_at: Optional[datetime] = None
    total_files: int = 0
    processed_files: int = 0
    skipped_files: int = 0
    error_files: int = 0
    total_entries: int = 0
    inserted_entries: int = 0
    duplicate_entries: int = 0
    skipped_lines: int = 0
    duplicates_removed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        """Run time in seconds; zero while the run is in flight."""
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def success(self) -> bool:
        return self.error_files == 0

    def summary(self) -> str:
        return (
            f"{self.sync_type.value} sync: {self.processed_files}/{self.total_files} files, "
            f"{self.inserted_entries} inserted, {self.skipped_lines} lines skipped, "
            f"{self.error_files} failed in {self.duration:.2f}s"
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)


class IngestionPipeline:
    """Runs full or incremental ingestion into the repository.

    Args:
        repository: Store receiving the records
        coordinator: Concurrent parser for the discovered files
        broker: Supplies the projects root directory
        batch_size: Records per insert transaction
    """

    def __init__(
        self,
        repository: UsageRepository,
        coordinator: IngestionCoordinator,
        broker: DirectoryAccessBroker,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.repository = repository
        self.coordinator = coordinator
        self.broker = broker
        self.batch_size = batch_size

    def run_full(self, cancel_token: Optional[CancellationToken] = None) -> SyncReport:
        return self.run(SyncType.FULL, cancel_token)

    def run_incremental(self, cancel_token: Optional[CancellationToken] = None) -> SyncReport:
        return self.run(SyncType.INCREMENTAL, cancel_token)

    def run(
        self,
        sync_type: SyncType = SyncType.FULL,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SyncReport:
        """Execute one ingestion run.

        A full run processes every discovered file; an incremental run only
        files that are new, modified, pending or previously failed. Per-file
        failures are recorded and do not stop the run.

        Args:
            sync_type: Full or incremental
            cancel_token: Checked between files and between insert batches

        Returns:
            SyncReport describing the run

        Raises:
            PreconditionError: If the projects root is missing or unreadable
            StoreError: If the store cannot be opened or fails fatally
            SyncError: If the run is cancelled
        """
        report = SyncReport(sync_type=sync_type, started_at=_now())

        root = self.broker.resolve_root()
        self.repository.initialize_schema()

        files = discover_files(root, FileOrder.SMALLEST_FIRST, cancel_token=cancel_token)
        report.total_files = len(files)

        candidates = files
        if sync_type is SyncType.INCREMENTAL:
            candidates = [
                source for source in files
                if self.repository.should_process_file(str(source.path), source.modified)
            ]
            report.skipped_files = len(files) - len(candidates)

        for source in candidates:
            self.repository.record_file_processing(str(source.path), source.size, source.modified)

        deduplicator = Deduplicator()
        try:
            for outcome in self.coordinator.iter_outcomes(candidates, cancel_token=cancel_token):
                self._store_outcome(outcome, deduplicator, report, cancel_token)
        except SyncError:
            if report.inserted_entries:
                self.repository.regenerate_rollups()
            raise

        if sync_type is SyncType.FULL:
            report.duplicates_removed = self.repository.deduplicate()
        if candidates or report.duplicates_removed:
            self.repository.regenerate_rollups()

        report.finished_at = _now()
        LOGGER.info("%s", report.summary())
        return report

    def _store_outcome(
        self,
        outcome: FileOutcome,
        deduplicator: Deduplicator,
        report: SyncReport,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        path = str(outcome.source.path)
        if not outcome.succeeded:
            self._fail_file(outcome.source, outcome.error or "unknown error", report)
            return

        records = outcome.result.records
        report.total_entries += len(records)
        report.skipped_lines += outcome.result.stats.skipped_lines

        unique = deduplicator.filter(records)
        report.duplicate_entries += unique.duplicates_removed

        # The first batch also replaces unkeyed rows stored by an earlier read of this file
        batches = [
            unique.records[offset:offset + self.batch_size]
            for offset in range(0, len(unique.records), self.batch_size)
        ] or [[]]
        try:
            for index, batch in enumerate(batches):
                checkpoint(cancel_token)
                report.inserted_entries += self.repository.insert_usage_records(
                    batch, replace_unkeyed_from=path if index == 0 else None
                )
        except StoreError as e:
            if is_fatal(e):
                raise SyncError(
                    SyncErrorKind.DATABASE_UPDATE_FAILED, f"Storing {path} failed", e
                ) from e
            self._fail_file(outcome.source, str(e), report)
            return

        self.repository.mark_file_completed(path, len(records))
        report.processed_files += 1

    def _fail_file(self, source: SourceFile, message: str, report: SyncReport) -> None:
        LOGGER.error("Ingestion of %s failed: %s", source.path, message)
        report.error_files += 1
        report.errors.append(f"{source.path}: {message}")
        self.repository.mark_file_error(str(source.path), message)

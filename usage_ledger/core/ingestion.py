"""
File discovery and concurrent parsing.

Parses many JSONL files with a bounded worker pool. Results arrive in
completion order; only the line order within one file is preserved.
"""

import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set, Union

from usage_ledger.storage.models import UsageRecord
from .cache import FileCache
from .cancellation import CancellationToken, checkpoint
from .errors import DirectoryNotFoundError, DirectoryPermissionError
from .parser import ParseResult, ParseStats, StreamingParser

LOGGER = logging.getLogger(__name__)

JSONL_SUFFIX = ".jsonl"
DEFAULT_MAX_CONCURRENT_FILES = 4


class FileOrder(Enum):
    """Processing order of discovered files."""
    SMALLEST_FIRST = "smallest-first"
    LARGEST_FIRST = "largest-first"


@dataclass(frozen=True)
class SourceFile:
    """A discovered log file with the size and mtime seen during discovery."""
    path: Path
    size: int
    modified: float


@dataclass
class FileOutcome:
    """Result of parsing one file; `error` is set when the file failed."""
    source: SourceFile
    result: ParseResult = field(default_factory=ParseResult)
    error: Optional[str] = None
    from_cache: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class IngestionResult:
    """Concatenated records of many files plus per-file outcomes."""
    records: List[UsageRecord] = field(default_factory=list)
    stats: ParseStats = field(default_factory=ParseStats)
    outcomes: List[FileOutcome] = field(default_factory=list)

    @property
    def failed_files(self) -> List[FileOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]


def discover_files(
    root: Union[str, Path],
    order: FileOrder = FileOrder.SMALLEST_FIRST,
    suffix: str = JSONL_SUFFIX,
    cancel_token: Optional[CancellationToken] = None,
) -> List[SourceFile]:
    """Recursively find log files under root, skipping hidden entries.

    Args:
        root: Directory to scan
        order: Sort by size ascending or descending
        suffix: File name suffix to match
        cancel_token: Checked once per directory

    Returns:
        Discovered files sorted by size

    Raises:
        DirectoryNotFoundError: If root does not exist
        DirectoryPermissionError: If root cannot be read
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise DirectoryNotFoundError(str(root_path))
    if not os.access(root_path, os.R_OK | os.X_OK):
        raise DirectoryPermissionError(str(root_path))

    def on_error(error: OSError) -> None:
        LOGGER.warning("Cannot scan %s: %s", error.filename, error.strerror)

    files: List[SourceFile] = []
    for dirpath, dirnames, filenames in os.walk(root_path, onerror=on_error):
        checkpoint(cancel_token)
        dirnames[:] = sorted(name for name in dirnames if not name.startswith("."))
        for name in filenames:
            if name.startswith(".") or not name.endswith(suffix):
                continue
            path = Path(dirpath) / name
            try:
                stat = path.stat()
            except OSError as e:
                LOGGER.warning("Cannot stat %s: %s", path, e)
                continue
            files.append(SourceFile(path=path, size=stat.st_size, modified=stat.st_mtime))

    files.sort(key=lambda source: source.size, reverse=order is FileOrder.LARGEST_FIRST)
    return files


class IngestionCoordinator:
    """Parses files concurrently with a bounded pool and an optional cache.

    Args:
        parser: Parser used for every file
        cache: Optional shared parse cache
        max_concurrent_files: Upper bound on files parsed at once
    """

    def __init__(
        self,
        parser: Optional[StreamingParser] = None,
        cache: Optional[FileCache] = None,
        max_concurrent_files: int = DEFAULT_MAX_CONCURRENT_FILES,
    ):
        if max_concurrent_files <= 0:
            raise ValueError("max_concurrent_files must be > 0")
        self.parser = parser or StreamingParser()
        self.cache = cache
        self.max_concurrent_files = max_concurrent_files

    def parse_file(
        self,
        source: SourceFile,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> FileOutcome:
        """Parse one file, consulting the cache first. Failures are captured, not raised."""
        path = str(source.path)
        if self.cache is not None:
            cached = self.cache.get(path, start, end)
            if cached is not None:
                stats = ParseStats(total_lines=len(cached), valid_lines=len(cached))
                return FileOutcome(source=source, result=ParseResult(cached, stats), from_cache=True)

        try:
            result = self.parser.parse_file(source.path, start, end)
        except Exception as e:
            LOGGER.error("Failed to parse %s: %s", path, e)
            return FileOutcome(source=source, error=str(e))

        if self.cache is not None:
            self.cache.set(path, result.records, start, end, file_mtime=source.modified)
        return FileOutcome(source=source, result=result)

    def iter_outcomes(
        self,
        files: Iterable[SourceFile],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[FileOutcome]:
        """Yield per-file outcomes as workers finish.

        The token is checked before each file is submitted; files already
        being parsed run to completion.
        """
        remaining = iter(files)
        with ThreadPoolExecutor(
            max_workers=self.max_concurrent_files, thread_name_prefix="usage-ingest"
        ) as pool:
            pending: Set[Future] = set()

            def submit_next() -> None:
                source = next(remaining, None)
                if source is not None:
                    checkpoint(cancel_token)
                    pending.add(pool.submit(self.parse_file, source, start, end))

            for _ in range(self.max_concurrent_files):
                submit_next()

            while pending:
                done, still_running = wait(pending, return_when=FIRST_COMPLETED)
                pending.clear()
                pending.update(still_running)
                for future in done:
                    yield future.result()
                    submit_next()

    def parse_files(
        self,
        files: Iterable[SourceFile],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> IngestionResult:
        """Parse files and concatenate their records. Order across files is unspecified."""
        ingestion = IngestionResult()
        for outcome in self.iter_outcomes(files, start, end, cancel_token):
            ingestion.outcomes.append(outcome)
            ingestion.records.extend(outcome.result.records)
            ingestion.stats.merge(outcome.result.stats)
        if ingestion.failed_files:
            LOGGER.warning("%d of %d files failed to parse", len(ingestion.failed_files), len(ingestion.outcomes))
        return ingestion

    def parse_directory(
        self,
        root: Union[str, Path],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        order: FileOrder = FileOrder.LARGEST_FIRST,
        cancel_token: Optional[CancellationToken] = None,
    ) -> IngestionResult:
        """Discover and parse every log file under root."""
        files = discover_files(root, order, cancel_token=cancel_token)
        return self.parse_files(files, start, end, cancel_token)

"""
Per-file cache of parse results.

Entries are keyed by file path plus the requested date range and are only
served while the file is unchanged and the entry is younger than the expiry.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from usage_ledger.storage.models import UsageRecord

LOGGER = logging.getLogger(__name__)

DEFAULT_EXPIRY_SECONDS = 3600.0
CLEANUP_EVERY_SETS = 10

CacheKey = Tuple[str, Optional[str], Optional[str]]


@dataclass(frozen=True)
class CacheEntry:
    """Cached records of one file for one date range."""
    records: Tuple[UsageRecord, ...]
    cached_at: float
    file_mtime: float


@dataclass(frozen=True)
class CacheStats:
    """Cache counters for observability."""
    hit_count: int
    miss_count: int
    entry_count: int
    total_cached_records: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hit_count + self.miss_count
        return self.hit_count / lookups if lookups else 0.0


def _key(path: str, start: Optional[datetime], end: Optional[datetime]) -> CacheKey:
    return (
        os.path.abspath(path),
        start.isoformat() if start else None,
        end.isoformat() if end else None,
    )


def _mtime(path: str) -> Optional[float]:
    try:
        return os.stat(path).st_mtime
    except OSError:
        return None


class FileCache:
    """Thread-safe cache shared by parser workers.

    Args:
        expiry_seconds: Maximum entry age
        clock: Time source returning epoch seconds
    """

    def __init__(self, expiry_seconds: float = DEFAULT_EXPIRY_SECONDS, clock: Callable[[], float] = time.time):
        if expiry_seconds <= 0:
            raise ValueError("expiry_seconds must be > 0")
        self.expiry_seconds = expiry_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sets = 0

    def get(
        self,
        path: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Optional[List[UsageRecord]]:
        """Return cached records, or None on a miss.

        A stale entry (file modified since caching, or expired) is evicted.
        """
        key = _key(path, start, end)
        current_mtime = _mtime(path)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            fresh = (
                current_mtime is not None
                and current_mtime <= entry.file_mtime
                and self._clock() - entry.cached_at < self.expiry_seconds
            )
            if not fresh:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return list(entry.records)

    def set(
        self,
        path: str,
        records: List[UsageRecord],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        file_mtime: Optional[float] = None,
    ) -> None:
        """Cache records for a file.

        Args:
            path: File the records were parsed from
            records: Parsed records
            start: Start of the date range used for parsing
            end: End of the date range used for parsing
            file_mtime: Modification time observed before parsing; read now if omitted
        """
        mtime = file_mtime if file_mtime is not None else _mtime(path)
        if mtime is None:
            return
        entry = CacheEntry(records=tuple(records), cached_at=self._clock(), file_mtime=mtime)
        with self._lock:
            self._entries[_key(path, start, end)] = entry
            self._sets += 1
            if self._sets % CLEANUP_EVERY_SETS == 0:
                self._remove_expired()

    def clear(self) -> None:
        """Drop all entries and reset counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._sets = 0

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hit_count=self._hits,
                miss_count=self._misses,
                entry_count=len(self._entries),
                total_cached_records=sum(len(entry.records) for entry in self._entries.values()),
            )

    def _remove_expired(self) -> None:
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if now - entry.cached_at >= self.expiry_seconds
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            LOGGER.debug("Evicted %d expired cache entries", len(expired))

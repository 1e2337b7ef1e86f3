"""
Streaming JSONL parser.

Reads files in fixed-size chunks, reassembles lines across chunk boundaries
and emits normalized usage records in bounded batches.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Sequence, Union

from usage_ledger.storage.models import UsageRecord
from .cancellation import CancellationToken, checkpoint
from .decoding import DEFAULT_DECODERS, LineDecoder, build_record, decode_line
from .pricing import PRICING_TABLE, PricingTable
from .timestamps import parse_timestamp

LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 128 * 1024
DEFAULT_BATCH_SIZE = 2000


def extract_project_path(file_path: Union[str, Path]) -> str:
    """Derive the project path of a log file.

    Uses the directories below a `projects` component, joined as `/a/b`;
    otherwise the file's parent directory.
    """
    path = Path(file_path)
    parts = path.parts
    if "projects" in parts:
        index = len(parts) - 1 - parts[::-1].index("projects")
        project_parts = parts[index + 1:-1]
        if project_parts:
            return "/" + "/".join(project_parts)
    return str(path.parent)


@dataclass
class ParseStats:
    """Line counters for one parse."""
    total_lines: int = 0
    valid_lines: int = 0
    skipped_lines: int = 0
    filtered_lines: int = 0

    def merge(self, other: "ParseStats") -> None:
        self.total_lines += other.total_lines
        self.valid_lines += other.valid_lines
        self.skipped_lines += other.skipped_lines
        self.filtered_lines += other.filtered_lines


@dataclass
class ParseResult:
    """Records parsed from one file, in line order."""
    records: List[UsageRecord] = field(default_factory=list)
    stats: ParseStats = field(default_factory=ParseStats)


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class StreamingParser:
    """Chunked, tolerant JSONL parser.

    Args:
        chunk_size: Bytes read per chunk
        batch_size: Records per emitted batch
        decoders: Ordered decoder strategies
        pricing: Pricing table used when a line carries no cost
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        batch_size: int = DEFAULT_BATCH_SIZE,
        decoders: Sequence[LineDecoder] = DEFAULT_DECODERS,
        pricing: PricingTable = PRICING_TABLE,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.chunk_size = chunk_size
        self.batch_size = batch_size
        self.decoders = tuple(decoders)
        self.pricing = pricing

    def iter_lines(self, stream: BinaryIO) -> Iterator[bytes]:
        """Yield complete lines; the trailing partial line waits for the next chunk."""
        residual: List[bytes] = []
        while True:
            chunk = stream.read(self.chunk_size)
            if not chunk:
                break
            pieces = chunk.split(b"\n")
            if len(pieces) == 1:
                residual.append(chunk)
                continue
            residual.append(pieces[0])
            yield b"".join(residual)
            yield from pieces[1:-1]
            residual = [pieces[-1]]
        # Final line without a terminating newline
        tail = b"".join(residual)
        if tail:
            yield tail

    def iter_batches(
        self,
        stream: BinaryIO,
        project_path: str,
        source_file: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        stats: Optional[ParseStats] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[List[UsageRecord]]:
        """Yield batches of records whose timestamp falls in [start, end].

        Malformed lines are counted in `stats.skipped_lines`, out-of-range or
        undatable records in `stats.filtered_lines`.
        """
        stats = stats if stats is not None else ParseStats()
        start, end = _aware(start), _aware(end)
        batch: List[UsageRecord] = []

        for raw_line in self.iter_lines(stream):
            if not raw_line.strip():
                continue
            stats.total_lines += 1

            record = self._decode(raw_line, project_path, source_file)
            if record is None:
                stats.skipped_lines += 1
                continue
            if not self._in_range(record, start, end):
                stats.filtered_lines += 1
                continue

            stats.valid_lines += 1
            batch.append(record)
            if len(batch) >= self.batch_size:
                yield batch
                batch = []
                checkpoint(cancel_token)

        if batch:
            yield batch

    def parse_stream(
        self,
        stream: BinaryIO,
        project_path: str,
        source_file: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ParseResult:
        """Parse an open binary stream into a single result."""
        result = ParseResult()
        for batch in self.iter_batches(
            stream, project_path, source_file, start, end, result.stats, cancel_token
        ):
            result.records.extend(batch)
        return result

    def parse_file(
        self,
        file_path: Union[str, Path],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ParseResult:
        """Parse one JSONL file.

        Raises:
            OSError: If the file cannot be opened or read
        """
        path = Path(file_path)
        with open(path, "rb") as stream:
            result = self.parse_stream(
                stream, extract_project_path(path), str(path), start, end, cancel_token
            )
        if result.stats.skipped_lines:
            LOGGER.debug(
                "Skipped %d of %d lines in %s",
                result.stats.skipped_lines, result.stats.total_lines, path,
            )
        return result

    def _decode(self, raw_line: bytes, project_path: str, source_file: str) -> Optional[UsageRecord]:
        try:
            line = raw_line.decode("utf-8")
        except UnicodeDecodeError:
            return None
        entry = decode_line(line, self.decoders)
        if entry is None:
            return None
        return build_record(entry, project_path, source_file, self.pricing)

    @staticmethod
    def _in_range(record: UsageRecord, start: Optional[datetime], end: Optional[datetime]) -> bool:
        if start is None and end is None:
            return True
        moment = parse_timestamp(record.timestamp)
        if moment is None:
            return False
        if start is not None and moment < start:
            return False
        if end is not None and moment > end:
            return False
        return True

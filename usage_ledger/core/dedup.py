"""
Identity-key deduplication.

Records sharing a non-empty (message_id, request_id) pair collapse to the
first one seen. Records without both identifiers are assumed unique and
always pass through.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Set, Tuple

from usage_ledger.storage.models import UsageRecord

IdentityKey = Tuple[str, str]


@dataclass
class DedupResult:
    """Surviving records in input order plus counters."""
    records: List[UsageRecord] = field(default_factory=list)
    duplicates_removed: int = 0
    unkeyed_records: int = 0


class Deduplicator:
    """Stateful deduplicator that remembers keys across batches."""

    def __init__(self):
        self._seen: Set[IdentityKey] = set()

    def __len__(self) -> int:
        return len(self._seen)

    def filter(self, records: Iterable[UsageRecord]) -> DedupResult:
        """Drop records whose key was already seen by this instance."""
        result = DedupResult()
        for record in records:
            key = record.identity_key
            if key is None:
                result.unkeyed_records += 1
                result.records.append(record)
            elif key in self._seen:
                result.duplicates_removed += 1
            else:
                self._seen.add(key)
                result.records.append(record)
        return result


def dedupe(records: Iterable[UsageRecord]) -> List[UsageRecord]:
    """Return records with later identity-key duplicates removed, order preserved."""
    return Deduplicator().filter(records).records

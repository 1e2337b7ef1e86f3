"""
Timestamp parsing helpers.

Log lines carry timestamps in several ISO-8601 flavours; all of them are
normalized to timezone-aware datetimes here.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

# Tried in order before falling back to datetime.fromisoformat
TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
)

# Epoch values above this are treated as milliseconds
_EPOCH_MILLIS_THRESHOLD = 10_000_000_000


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a log timestamp into an aware datetime.

    Naive values are assumed to be UTC. Returns None when no format matches.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    parsed = None
    for fmt in TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
            break
        except ValueError:
            continue

    if parsed is None:
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def epoch_to_iso(value: Union[int, float]) -> str:
    """Convert epoch seconds (or milliseconds) to an ISO-8601 UTC string."""
    seconds = float(value)
    if seconds > _EPOCH_MILLIS_THRESHOLD:
        seconds = seconds / 1000.0
    moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def local_date_string(timestamp: str) -> str:
    """Return the local calendar date (YYYY-MM-DD) of a timestamp.

    Falls back to the first ten characters when the timestamp cannot be parsed.
    """
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return timestamp[:10]
    return parsed.astimezone().strftime("%Y-%m-%d")


def utc_cutoff(days: int, now: Optional[datetime] = None) -> str:
    """Return the ISO-8601 UTC instant `days` before now, comparable to stored timestamps."""
    reference = now or datetime.now(timezone.utc)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    cutoff = reference.astimezone(timezone.utc) - timedelta(days=days)
    return cutoff.strftime("%Y-%m-%dT%H:%M:%S")


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()

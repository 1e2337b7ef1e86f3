"""
Tolerant decoding of log lines.

Each line is tried against an ordered list of decoder strategies; the first
one that returns an entry wins. Strategies go from the strict current log
shape, through a lenient reading of known renamed fields, to generic probing
of every historical field-name variant.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Sequence

from usage_ledger.storage.models import MAX_TOKEN_COUNT, UsageRecord
from .pricing import PRICING_TABLE, PricingTable, estimate_cost
from .timestamps import epoch_to_iso
from .token_counter import TokenUsage

LOGGER = logging.getLogger(__name__)

INVALID_MODELS = {"", "unknown", "<synthetic>"}
UNKNOWN_SESSION = "unknown"


@dataclass(frozen=True)
class DecodedEntry:
    """Fields extracted from one log line before normalization."""
    timestamp: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: Optional[float] = None
    session_id: str = UNKNOWN_SESSION
    request_id: Optional[str] = None
    message_id: Optional[str] = None
    message_type: str = ""


def _as_int(value: Any, allow_strings: bool = False) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if allow_strings and isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return int(number) if number.is_integer() else None
    return None


def _as_float(value: Any, allow_strings: bool = False) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except OverflowError:
            return None
    if allow_strings and isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _as_timestamp(value: Any) -> Optional[str]:
    """Accept ISO strings and epoch numbers (seconds or milliseconds)."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        try:
            return epoch_to_iso(value)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def _first(mapping: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return None


class LineDecoder:
    """A single decoding strategy."""

    name = "base"

    def decode(self, payload: Dict[str, Any]) -> Optional[DecodedEntry]:
        """Return an entry, or None when the payload does not fit this strategy."""
        raise NotImplementedError


class StrictDecoder(LineDecoder):
    """Exact match for the current assistant-message log shape."""

    name = "strict"

    def decode(self, payload: Dict[str, Any]) -> Optional[DecodedEntry]:
        timestamp = payload.get("timestamp")
        message = payload.get("message")
        if not isinstance(timestamp, str) or not isinstance(message, dict):
            return None

        model = message.get("model")
        usage = message.get("usage")
        if not isinstance(model, str) or not isinstance(usage, dict):
            return None

        counters = []
        for key in ("input_tokens", "output_tokens"):
            value = usage.get(key)
            if not isinstance(value, int) or isinstance(value, bool):
                return None
            counters.append(value)
        for key in ("cache_creation_input_tokens", "cache_read_input_tokens"):
            value = usage.get(key, 0)
            if not isinstance(value, int) or isinstance(value, bool):
                return None
            counters.append(value)

        cost = payload.get("costUSD")
        if cost is not None and _as_float(cost) is None:
            return None
        session_id = payload.get("sessionId", UNKNOWN_SESSION)
        request_id = payload.get("requestId")
        message_id = message.get("id")
        for value in (session_id, request_id, message_id):
            if value is not None and not isinstance(value, str):
                return None

        return DecodedEntry(
            timestamp=timestamp,
            model=model,
            input_tokens=counters[0],
            output_tokens=counters[1],
            cache_creation_tokens=counters[2],
            cache_read_tokens=counters[3],
            cost=_as_float(cost),
            session_id=session_id or UNKNOWN_SESSION,
            request_id=request_id or None,
            message_id=message_id or None,
            message_type=payload.get("type") if isinstance(payload.get("type"), str) else "",
        )


class LenientDecoder(LineDecoder):
    """Known renamed fields, top-level usage blocks and epoch timestamps."""

    name = "lenient"

    def decode(self, payload: Dict[str, Any]) -> Optional[DecodedEntry]:
        message = payload.get("message") if isinstance(payload.get("message"), dict) else {}

        timestamp = _as_timestamp(_first(payload, ("timestamp", "date")))
        model = _as_text(payload.get("model")) or _as_text(message.get("model"))
        if timestamp is None or model is None:
            return None

        usage = payload.get("usage")
        if not isinstance(usage, dict):
            usage = message.get("usage") if isinstance(message.get("usage"), dict) else {}

        counters = []
        for keys in (
            ("input_tokens",),
            ("output_tokens",),
            ("cache_creation_input_tokens", "cache_creation_tokens"),
            ("cache_read_input_tokens", "cache_read_tokens"),
        ):
            raw = _first(usage, keys)
            value = 0 if raw is None else _as_int(raw)
            if value is None:
                return None
            counters.append(value)

        raw_cost = _first(payload, ("cost", "costUSD"))
        cost = None if raw_cost is None else _as_float(raw_cost)
        if raw_cost is not None and cost is None:
            return None

        return DecodedEntry(
            timestamp=timestamp,
            model=model,
            input_tokens=counters[0],
            output_tokens=counters[1],
            cache_creation_tokens=counters[2],
            cache_read_tokens=counters[3],
            cost=cost,
            session_id=_as_text(_first(payload, ("sessionId", "session_id"))) or UNKNOWN_SESSION,
            request_id=_as_text(_first(payload, ("requestId", "request_id", "messageId"))),
            message_id=_as_text(payload.get("message_id")) or _as_text(message.get("id")),
            message_type=_as_text(_first(payload, ("type", "message_type"))) or "",
        )


class GenericDecoder(LineDecoder):
    """Probe every historical spelling of each field; numbers may be strings."""

    name = "generic"

    TYPE_KEYS = ("type", "message_type", "messageType")
    MODEL_KEYS = ("model", "model_name", "modelName")
    TIMESTAMP_KEYS = ("timestamp", "created_at", "createdAt", "date", "time")
    SESSION_KEYS = ("sessionId", "session_id", "session")
    REQUEST_KEYS = ("requestId", "request_id")
    MESSAGE_ID_KEYS = ("message_id", "messageId")
    COST_KEYS = ("cost", "cost_usd", "costUSD", "price")
    INPUT_KEYS = ("input_tokens", "inputTokens", "input", "in_tokens")
    OUTPUT_KEYS = ("output_tokens", "outputTokens", "output", "out_tokens")
    CACHE_CREATION_KEYS = (
        "cache_creation_input_tokens",
        "cacheCreationInputTokens",
        "cache_creation_tokens",
        "cacheCreationTokens",
        "cache_write_tokens",
        "cacheWriteTokens",
        "cache_write_input_tokens",
        "cacheWriteInputTokens",
    )
    CACHE_READ_KEYS = (
        "cache_read_input_tokens",
        "cacheReadInputTokens",
        "cache_read_tokens",
        "cacheReadTokens",
    )

    def decode(self, payload: Dict[str, Any]) -> Optional[DecodedEntry]:
        message = payload.get("message") if isinstance(payload.get("message"), dict) else {}

        timestamp = _as_timestamp(_first(payload, self.TIMESTAMP_KEYS))
        model = _as_text(_first(payload, self.MODEL_KEYS)) or _as_text(_first(message, self.MODEL_KEYS))
        if timestamp is None or model is None:
            return None

        # usage block, then message.usage, then the top level itself
        if isinstance(payload.get("usage"), dict):
            usage = payload["usage"]
        elif isinstance(message.get("usage"), dict):
            usage = message["usage"]
        else:
            usage = payload

        def counter(keys: Sequence[str]) -> int:
            value = _as_int(_first(usage, keys), allow_strings=True)
            return value if value is not None else 0

        raw_cost = _first(payload, self.COST_KEYS)
        message_id = _as_text(_first(payload, self.MESSAGE_ID_KEYS)) or _as_text(message.get("id"))

        return DecodedEntry(
            timestamp=timestamp,
            model=model,
            input_tokens=counter(self.INPUT_KEYS),
            output_tokens=counter(self.OUTPUT_KEYS),
            cache_creation_tokens=counter(self.CACHE_CREATION_KEYS),
            cache_read_tokens=counter(self.CACHE_READ_KEYS),
            cost=_as_float(raw_cost, allow_strings=True),
            session_id=_as_text(_first(payload, self.SESSION_KEYS)) or UNKNOWN_SESSION,
            request_id=_as_text(_first(payload, self.REQUEST_KEYS)),
            message_id=message_id,
            message_type=_as_text(_first(payload, self.TYPE_KEYS)) or "",
        )


DEFAULT_DECODERS = (StrictDecoder(), LenientDecoder(), GenericDecoder())


def decode_line(line: str, decoders: Sequence[LineDecoder] = DEFAULT_DECODERS) -> Optional[DecodedEntry]:
    """Decode one JSON line with the first strategy that accepts it.

    Returns None for blank lines, invalid JSON, non-object values and
    payloads that no strategy accepts.
    """
    text = line.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None

    for decoder in decoders:
        entry = decoder.decode(payload)
        if entry is not None:
            return entry
    return None


def build_record(
    entry: DecodedEntry,
    project_path: str,
    source_file: str,
    pricing: PricingTable = PRICING_TABLE,
) -> Optional[UsageRecord]:
    """Normalize a decoded entry into a UsageRecord.

    Entries for placeholder models, and entries with neither a session nor
    any tokens or cost, are dropped, as are entries whose counters exceed
    what the store can hold or whose cost is not finite. A missing cost is
    estimated from the pricing table.
    """
    if entry.model.strip().lower() in INVALID_MODELS:
        return None

    usage = TokenUsage(
        input_tokens=entry.input_tokens,
        output_tokens=entry.output_tokens,
        cache_creation_tokens=entry.cache_creation_tokens,
        cache_read_tokens=entry.cache_read_tokens,
    )
    if max(usage.input_tokens, usage.output_tokens, usage.cache_creation_tokens,
           usage.cache_read_tokens) > MAX_TOKEN_COUNT:
        LOGGER.debug("Rejected entry at %s from %s: token count out of range", entry.timestamp, source_file)
        return None

    has_session = entry.session_id not in ("", UNKNOWN_SESSION)
    if not has_session and usage.total_tokens == 0 and not entry.cost:
        return None

    cost = entry.cost
    if cost is None:
        cost = estimate_cost(entry.model, usage, pricing)

    try:
        return UsageRecord(
            timestamp=entry.timestamp,
            model=entry.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_creation_tokens=usage.cache_creation_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            cost=cost,
            session_id=entry.session_id or UNKNOWN_SESSION,
            project_path=project_path,
            request_id=entry.request_id or None,
            message_id=entry.message_id or None,
            message_type=entry.message_type,
            source_file=source_file,
        )
    except ValueError as e:
        LOGGER.debug("Rejected entry at %s from %s: %s", entry.timestamp, source_file, e)
        return None

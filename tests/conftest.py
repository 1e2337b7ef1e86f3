"""
Shared fixtures for the test suite.

Builds JSONL lines in the shape the CLI tool writes them.
"""

import json
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

import pytest

from usage_ledger.storage.models import UsageRecord


def _line(
    message_id: Optional[str] = "msg_1",
    request_id: Optional[str] = "req_1",
    model: str = "claude-sonnet-4-20250514",
    input_tokens: int = 100,
    output_tokens: int = 50,
    cache_creation_tokens: int = 0,
    cache_read_tokens: int = 0,
    cost: Optional[float] = 0.01,
    session_id: str = "session-1",
    timestamp: str = "2024-05-01T10:00:00.000Z",
) -> str:
    payload = {
        "type": "assistant",
        "timestamp": timestamp,
        "sessionId": session_id,
        "message": {
            "model": model,
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_creation_input_tokens": cache_creation_tokens,
                "cache_read_input_tokens": cache_read_tokens,
            },
        },
    }
    if message_id is not None:
        payload["message"]["id"] = message_id
    if request_id is not None:
        payload["requestId"] = request_id
    if cost is not None:
        payload["costUSD"] = cost
    return json.dumps(payload)


def _record(index: int = 0, **overrides) -> UsageRecord:
    values = dict(
        timestamp="2024-05-01T10:00:00.000Z",
        model="claude-sonnet-4-20250514",
        input_tokens=100,
        output_tokens=50,
        cache_creation_tokens=10,
        cache_read_tokens=5,
        cost=0.01,
        session_id="session-1",
        project_path="/-Users-dev-app",
        request_id=f"req_{index}",
        message_id=f"msg_{index}",
        message_type="assistant",
        source_file="/logs/projects/-Users-dev-app/a.jsonl",
    )
    values.update(overrides)
    return UsageRecord(**values)


def _write_jsonl(path: str, lines: Iterable[str], trailing_newline: bool = True) -> str:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    text = "\n".join(lines)
    if text and trailing_newline:
        text += "\n"
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return path


@pytest.fixture
def make_line() -> Callable[..., str]:
    """Factory for one assistant-message JSONL line."""
    return _line


@pytest.fixture
def make_record() -> Callable[..., UsageRecord]:
    """Factory for a UsageRecord with unique identifiers per index."""
    return _record


@pytest.fixture
def write_jsonl() -> Callable[..., str]:
    """Write lines to a JSONL file, creating parent directories."""
    return _write_jsonl


@pytest.fixture
def recent_timestamp() -> Callable[[float], str]:
    """ISO timestamp a number of days before now."""
    def build(days_ago: float = 0.0) -> str:
        moment = datetime.now(timezone.utc) - timedelta(days=days_ago)
        return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"
    return build

"""
Error taxonomy and recovery policy.

Every error kind maps once to RECOVERABLE or FATAL. The hybrid read path and
the ingestion pipeline both consult the same table, so a failure is never
fallback-worthy on one path and fatal on the other.
"""

import sqlite3
from enum import Enum
from typing import Dict, Optional, Type

from usage_ledger.storage.errors import (
    StoreBusyError,
    StoreConnectionError,
    StoreDataCorruptionError,
    StoreDataNotFoundError,
    StoreOperationError,
)


class UsageLedgerError(Exception):
    """Base class for ledger errors outside the store."""


class PreconditionError(UsageLedgerError):
    """An operation cannot start; surfaced verbatim to the caller."""


class DirectoryNotFoundError(PreconditionError):
    """The projects root directory does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Projects directory not found: {path}")
        self.path = path


class DirectoryPermissionError(PreconditionError):
    """The projects root directory exists but cannot be read."""

    def __init__(self, path: str):
        super().__init__(f"Permission denied for projects directory: {path}")
        self.path = path


class SyncErrorKind(Enum):
    """Reasons a sync operation can fail."""
    IN_PROGRESS = "in_progress"
    CANCELLED = "cancelled"
    CONFIG_INVALID = "config_invalid"
    INTERVAL_INVALID = "interval_invalid"
    DATABASE_UPDATE_FAILED = "database_update_failed"
    SUSPENDED = "suspended"


class SyncError(UsageLedgerError):
    """Raised by the sync pipeline and scheduler."""

    def __init__(self, kind: SyncErrorKind, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.cause = cause

    def __str__(self) -> str:
        text = super().__str__()
        if self.cause is not None:
            return f"{text}: {self.cause}"
        return text


class ErrorDisposition(Enum):
    """How a caller reacts to an error."""
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


ERROR_POLICY: Dict[Type[BaseException], ErrorDisposition] = {
    StoreConnectionError: ErrorDisposition.RECOVERABLE,
    StoreOperationError: ErrorDisposition.RECOVERABLE,
    StoreBusyError: ErrorDisposition.RECOVERABLE,
    StoreDataNotFoundError: ErrorDisposition.FATAL,
    StoreDataCorruptionError: ErrorDisposition.FATAL,
    sqlite3.OperationalError: ErrorDisposition.RECOVERABLE,
    sqlite3.DatabaseError: ErrorDisposition.FATAL,
    OSError: ErrorDisposition.RECOVERABLE,
    PreconditionError: ErrorDisposition.FATAL,
}


def classify_error(error: BaseException) -> ErrorDisposition:
    """Look up the disposition of an error, most specific class first.

    Unmapped kinds default to RECOVERABLE.
    """
    for cls in type(error).__mro__:
        if cls in ERROR_POLICY:
            return ERROR_POLICY[cls]
    return ErrorDisposition.RECOVERABLE


def is_fatal(error: BaseException) -> bool:
    return classify_error(error) is ErrorDisposition.FATAL

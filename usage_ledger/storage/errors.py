"""
Store error kinds.

Raw sqlite3 errors are translated into these at the repository boundary so
callers can classify failures without inspecting driver messages.
"""

import sqlite3


class StoreError(Exception):
    """Base class for all embedded store failures."""


class StoreConnectionError(StoreError):
    """The database file could not be opened or configured."""


class StoreOperationError(StoreError):
    """A statement or transaction failed to complete."""


class StoreBusyError(StoreOperationError):
    """The database was locked by another writer."""


class StoreDataNotFoundError(StoreError):
    """Expected rows or tables are missing."""


class StoreDataCorruptionError(StoreError):
    """The database file is malformed or holds invalid data."""


def translate_sqlite_error(exc: sqlite3.Error, context: str) -> StoreError:
    """Map a sqlite3 exception onto a store error kind.
    
    Args:
        exc: The driver exception
        context: Short description of the failed operation
        
    Returns:
        A StoreError subclass instance wrapping the original message
    """
    message = f"{context}: {exc}"
    text = str(exc).lower()
    
    if isinstance(exc, sqlite3.OperationalError):
        if "locked" in text or "busy" in text:
            return StoreBusyError(message)
        if "no such table" in text or "no such column" in text:
            return StoreDataNotFoundError(message)
        if "unable to open" in text:
            return StoreConnectionError(message)
        return StoreOperationError(message)
    if isinstance(exc, sqlite3.IntegrityError):
        return StoreOperationError(message)
    if isinstance(exc, sqlite3.DatabaseError):
        if "malformed" in text or "not a database" in text:
            return StoreDataCorruptionError(message)
        return StoreOperationError(message)
    return StoreError(message)

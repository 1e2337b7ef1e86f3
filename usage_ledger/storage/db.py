"""
Database connection management.

Provides SQLite connections configured for write-ahead logging.
"""

import sqlite3
from pathlib import Path

from .errors import StoreConnectionError, StoreDataCorruptionError, translate_sqlite_error

DEFAULT_DB_PATH = "usage_ledger.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0) -> sqlite3.Connection:
    """Create and return a SQLite connection in WAL mode.

    Connections run in autocommit mode; callers open explicit transactions
    with BEGIN so that a batch either fully lands or fully rolls back.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database

    Returns:
        SQLite connection with WAL journaling and foreign keys enabled

    Raises:
        StoreConnectionError: If the database cannot be opened
        StoreDataCorruptionError: If the file is not a valid database
    """
    path = Path(db_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(path),
            timeout=timeout,
            isolation_level=None,
            check_same_thread=False,
        )
    except (sqlite3.Error, OSError) as e:
        raise StoreConnectionError(f"Cannot open database {db_path}: {e}") from e

    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA temp_store = MEMORY")
    except sqlite3.Error as e:
        conn.close()
        error = translate_sqlite_error(e, f"Cannot configure database {db_path}")
        if isinstance(error, StoreDataCorruptionError):
            raise error from e
        raise StoreConnectionError(str(error)) from e
    return conn

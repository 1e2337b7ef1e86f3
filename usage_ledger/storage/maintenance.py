"""
Store maintenance statements.

Dataset-wide deduplication, resets, retention cleanup and summaries. The
functions take an open connection; the repository owns locking and
transactions.
"""

import sqlite3
from typing import Sequence

from usage_ledger.core.timestamps import local_date_string
from .models import StoreSummary

DELETE_DUPLICATES_SQL = """
    DELETE FROM usage_entries
    WHERE id NOT IN (
        SELECT MIN(id) FROM usage_entries
        WHERE message_id IS NOT NULL AND request_id IS NOT NULL
          AND message_id != '' AND request_id != ''
        GROUP BY message_id, request_id
        UNION
        SELECT id FROM usage_entries
        WHERE message_id IS NULL OR request_id IS NULL
           OR message_id = '' OR request_id = ''
    )
"""


def delete_duplicates(conn: sqlite3.Connection) -> int:
    """Keep the minimum-id row per identity key plus every unkeyed row."""
    cursor = conn.execute(DELETE_DUPLICATES_SQL)
    return cursor.rowcount


def delete_unkeyed_from_file(conn: sqlite3.Connection, source_file: str) -> int:
    """Delete the rows without an identity key that came from one source file."""
    cursor = conn.execute("""
        DELETE FROM usage_entries
        WHERE source_file = ?
          AND (message_id IS NULL OR request_id IS NULL OR message_id = '' OR request_id = '')
    """, (source_file,))
    return cursor.rowcount


def drop_tables(conn: sqlite3.Connection, tables: Sequence[str]) -> None:
    """Drop the given tables and clear their autoincrement sequences."""
    for table in tables:
        conn.execute(f"DROP TABLE IF EXISTS {table}")
    has_sequence = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'sqlite_sequence'"
    ).fetchone()
    if has_sequence:
        conn.execute("DELETE FROM sqlite_sequence")


def delete_older_than(conn: sqlite3.Connection, cutoff: str) -> int:
    """Delete raw records whose timestamp is an instant before the cutoff.

    Rows with an unparseable timestamp are kept.
    """
    cursor = conn.execute(
        "DELETE FROM usage_entries WHERE julianday(timestamp) < julianday(?)", (cutoff,)
    )
    return cursor.rowcount


def refresh_date_strings(conn: sqlite3.Connection) -> int:
    """Recompute local date strings; returns the number of rows changed."""
    rows = conn.execute("SELECT id, timestamp, date_string FROM usage_entries").fetchall()
    updates = []
    for row_id, timestamp, date_string in rows:
        fresh = local_date_string(timestamp)
        if fresh != date_string:
            updates.append((fresh, row_id))
    conn.executemany(
        "UPDATE usage_entries SET date_string = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        updates,
    )
    return len(updates)


def summarize(conn: sqlite3.Connection, tables: Sequence[str]) -> StoreSummary:
    counts = {
        table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        for table in tables
    }
    status_rows = conn.execute("""
        SELECT processing_status, COUNT(*) FROM jsonl_files
        GROUP BY processing_status ORDER BY processing_status
    """).fetchall()
    return StoreSummary(
        usage_entries=counts["usage_entries"],
        jsonl_files=counts["jsonl_files"],
        daily_statistics=counts["daily_statistics"],
        model_statistics=counts["model_statistics"],
        project_statistics=counts["project_statistics"],
        files_by_status=tuple((status, count) for status, count in status_rows),
    )

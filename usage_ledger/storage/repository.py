"""
Repository pattern for data access.

Owns the SQLite schema, batch inserts, per-file processing state and the
aggregate queries. Every operation is serialized through one lock so the
store is never written from two batches at once.
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, Tuple

from usage_ledger.core.timestamps import utc_cutoff
from . import maintenance, rollups
from .rollups import range_predicate
from .db import DEFAULT_DB_PATH, get_connection
from .errors import StoreBusyError, StoreOperationError, translate_sqlite_error
from .models import (
    DailyStat,
    DailyUsage,
    DateRange,
    FileProcessingState,
    FileStatus,
    ModelStat,
    ModelUsage,
    ProjectStat,
    ProjectUsage,
    SessionSortOrder,
    StoreSummary,
    UsageRecord,
    UsageStatistics,
)

LOGGER = logging.getLogger(__name__)

TABLES = (
    "usage_entries",
    "jsonl_files",
    "daily_statistics",
    "model_statistics",
    "project_statistics",
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS usage_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        model TEXT NOT NULL,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
        cache_read_tokens INTEGER NOT NULL DEFAULT 0,
        cost REAL NOT NULL DEFAULT 0,
        session_id TEXT NOT NULL,
        project_path TEXT NOT NULL,
        project_name TEXT NOT NULL,
        request_id TEXT,
        message_id TEXT,
        message_type TEXT NOT NULL DEFAULT '',
        date_string TEXT NOT NULL,
        source_file TEXT NOT NULL,
        total_tokens INTEGER GENERATED ALWAYS AS (
            input_tokens + output_tokens + cache_creation_tokens + cache_read_tokens
        ) STORED,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jsonl_files (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        file_path TEXT NOT NULL UNIQUE,
        file_name TEXT NOT NULL,
        file_size INTEGER NOT NULL DEFAULT 0,
        last_modified REAL NOT NULL,
        last_processed TEXT,
        entry_count INTEGER NOT NULL DEFAULT 0,
        processing_status TEXT NOT NULL DEFAULT 'pending',
        error_message TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_statistics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        date_string TEXT NOT NULL UNIQUE,
        total_cost REAL NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
        cache_read_tokens INTEGER NOT NULL DEFAULT 0,
        session_count INTEGER NOT NULL DEFAULT 0,
        request_count INTEGER NOT NULL DEFAULT 0,
        models_used TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS model_statistics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        model TEXT NOT NULL,
        date_range TEXT NOT NULL,
        total_cost REAL NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
        cache_read_tokens INTEGER NOT NULL DEFAULT 0,
        session_count INTEGER NOT NULL DEFAULT 0,
        request_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(model, date_range)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project_statistics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_path TEXT NOT NULL,
        project_name TEXT NOT NULL,
        date_range TEXT NOT NULL,
        total_cost REAL NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        session_count INTEGER NOT NULL DEFAULT 0,
        request_count INTEGER NOT NULL DEFAULT 0,
        last_used TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(project_path, date_range)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_timestamp ON usage_entries(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_usage_date_string ON usage_entries(date_string)",
    "CREATE INDEX IF NOT EXISTS idx_usage_model ON usage_entries(model)",
    "CREATE INDEX IF NOT EXISTS idx_usage_project ON usage_entries(project_path)",
    "CREATE INDEX IF NOT EXISTS idx_usage_session ON usage_entries(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_usage_source_file ON usage_entries(source_file)",
    "CREATE INDEX IF NOT EXISTS idx_usage_dedup ON usage_entries(message_id, request_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_usage_date_model ON usage_entries(date_string, model)",
    "CREATE INDEX IF NOT EXISTS idx_usage_date_project ON usage_entries(date_string, project_path)",
    # Keyed records are unique; unkeyed records are never constrained
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_usage_identity ON usage_entries(message_id, request_id)
    WHERE message_id IS NOT NULL AND request_id IS NOT NULL
      AND message_id != '' AND request_id != ''
    """,
    "CREATE INDEX IF NOT EXISTS idx_files_modified ON jsonl_files(last_modified)",
    "CREATE INDEX IF NOT EXISTS idx_files_status ON jsonl_files(processing_status)",
    "CREATE INDEX IF NOT EXISTS idx_model_stats_range ON model_statistics(model, date_range)",
    "CREATE INDEX IF NOT EXISTS idx_project_stats_range ON project_statistics(project_path, date_range)",
)

INSERT_USAGE_SQL = """
    INSERT OR IGNORE INTO usage_entries
    (timestamp, model, input_tokens, output_tokens, cache_creation_tokens,
     cache_read_tokens, cost, session_id, project_path, project_name,
     request_id, message_id, message_type, date_string, source_file)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_SESSION_ORDER_SQL = {
    SessionSortOrder.COST_DESC: "total_cost DESC",
    SessionSortOrder.COST_ASC: "total_cost ASC",
    SessionSortOrder.DATE_DESC: "last_used DESC",
    SessionSortOrder.DATE_ASC: "last_used ASC",
    SessionSortOrder.NAME_ASC: "project_name COLLATE NOCASE ASC",
    SessionSortOrder.NAME_DESC: "project_name COLLATE NOCASE DESC",
}


def _record_params(record: UsageRecord) -> Tuple:
    return (
        record.timestamp,
        record.model,
        record.input_tokens,
        record.output_tokens,
        record.cache_creation_tokens,
        record.cache_read_tokens,
        record.cost,
        record.session_id,
        record.project_path,
        record.project_name,
        record.request_id or None,
        record.message_id or None,
        record.message_type,
        record.date_string,
        record.source_file,
    )


class UsageRepository:
    """Repository for the usage ledger database.

    Connections are opened per operation; all operations share one
    re-entrant lock, which makes this object safe to share between the
    scheduler thread, ingestion workers and readers.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._lock = threading.RLock()

    @contextmanager
    def _connect(self, context: str) -> Iterator[sqlite3.Connection]:
        """Serialize access, open a connection and translate driver errors."""
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                yield conn
            except sqlite3.Error as e:
                raise translate_sqlite_error(e, context) from e
            finally:
                conn.close()

    @staticmethod
    @contextmanager
    def _transaction(conn: sqlite3.Connection, immediate: bool = True) -> Iterator[None]:
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield
        except Exception:
            conn.rollback()
            raise
        conn.commit()

    # Schema

    def initialize_schema(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self._connect("initialize schema") as conn:
            with self._transaction(conn):
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)

    # Usage records

    def insert_usage_records(
        self,
        records: Sequence[UsageRecord],
        replace_unkeyed_from: Optional[str] = None,
    ) -> int:
        """Insert a batch of records atomically, ignoring duplicate identity keys.

        The batch runs in one transaction. A failed batch is rolled back and
        retried once before the error is surfaced.

        Args:
            records: Records to insert
            replace_unkeyed_from: Source file being re-read; its stored records
                without an identity key are deleted in the same transaction, so
                re-reading a file never duplicates them

        Returns:
            Number of rows actually inserted

        Raises:
            StoreOperationError: If the batch fails twice
        """
        if not records and replace_unkeyed_from is None:
            return 0

        params = [_record_params(record) for record in records]
        try:
            return self._insert_batch(params, replace_unkeyed_from)
        except StoreOperationError as e:
            level = logging.INFO if isinstance(e, StoreBusyError) else logging.WARNING
            LOGGER.log(level, "Insert of %d records failed, retrying once: %s", len(params), e)
        return self._insert_batch(params, replace_unkeyed_from)

    def _insert_batch(self, params: List[Tuple], replace_unkeyed_from: Optional[str] = None) -> int:
        with self._connect("insert usage records") as conn:
            try:
                with self._transaction(conn):
                    if replace_unkeyed_from is not None:
                        replaced = maintenance.delete_unkeyed_from_file(conn, replace_unkeyed_from)
                        if replaced:
                            LOGGER.debug("Replacing %d unkeyed records from %s", replaced, replace_unkeyed_from)
                    before = conn.total_changes
                    conn.executemany(INSERT_USAGE_SQL, params)
                    inserted = conn.total_changes - before
            except OverflowError as e:
                raise StoreOperationError(f"insert usage records: {e}") from e
            return inserted

    def count_usage_records(self) -> int:
        """Total number of rows in usage_entries."""
        with self._connect("count usage records") as conn:
            return conn.execute("SELECT COUNT(*) FROM usage_entries").fetchone()[0]

    def fetch_usage_records(self, limit: Optional[int] = None) -> List[UsageRecord]:
        """Fetch stored records ordered by insertion id.

        Args:
            limit: Optional maximum number of records

        Returns:
            List of usage records, oldest insert first
        """
        query = """
            SELECT timestamp, model, input_tokens, output_tokens,
                   cache_creation_tokens, cache_read_tokens, cost, session_id,
                   project_path, request_id, message_id, message_type, source_file
            FROM usage_entries ORDER BY id
        """
        params: List = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect("fetch usage records") as conn:
            return [
                UsageRecord(
                    timestamp=row[0],
                    model=row[1],
                    input_tokens=row[2],
                    output_tokens=row[3],
                    cache_creation_tokens=row[4],
                    cache_read_tokens=row[5],
                    cost=row[6],
                    session_id=row[7],
                    project_path=row[8],
                    request_id=row[9],
                    message_id=row[10],
                    message_type=row[11],
                    source_file=row[12],
                )
                for row in conn.execute(query, params).fetchall()
            ]

    # File processing state

    def record_file_processing(self, file_path: str, file_size: int, last_modified: float) -> None:
        """Register a file as pending, refreshing its size and modification time."""
        with self._connect("record file processing") as conn:
            conn.execute("""
                INSERT INTO jsonl_files
                (file_path, file_name, file_size, last_modified, processing_status)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(file_path) DO UPDATE SET
                    file_size = excluded.file_size,
                    last_modified = excluded.last_modified,
                    processing_status = excluded.processing_status,
                    error_message = NULL,
                    updated_at = CURRENT_TIMESTAMP
            """, (
                file_path,
                os.path.basename(file_path),
                file_size,
                last_modified,
                FileStatus.PENDING.value,
            ))

    def mark_file_completed(self, file_path: str, entry_count: int) -> None:
        """Mark a file completed and record how many entries it produced."""
        self._update_file_status(file_path, FileStatus.COMPLETED, entry_count=entry_count)

    def mark_file_error(self, file_path: str, message: str) -> None:
        """Mark a file failed with an error message."""
        self._update_file_status(file_path, FileStatus.ERROR, error_message=message)

    def _update_file_status(
        self,
        file_path: str,
        status: FileStatus,
        entry_count: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        processed_at = datetime.now(timezone.utc).isoformat()
        with self._connect("update file status") as conn:
            conn.execute("""
                UPDATE jsonl_files SET
                    processing_status = ?,
                    entry_count = COALESCE(?, entry_count),
                    error_message = ?,
                    last_processed = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE file_path = ?
            """, (status.value, entry_count, error_message, processed_at, file_path))

    def get_file_state(self, file_path: str) -> Optional[FileProcessingState]:
        """Get the recorded processing state of one file, if any."""
        with self._connect("get file state") as conn:
            row = conn.execute("""
                SELECT file_path, file_name, file_size, last_modified, last_processed,
                       entry_count, processing_status, error_message
                FROM jsonl_files WHERE file_path = ?
            """, (file_path,)).fetchone()
        return _file_state_from_row(row) if row else None

    def list_file_states(self) -> List[FileProcessingState]:
        """All recorded file states ordered by path."""
        with self._connect("list file states") as conn:
            rows = conn.execute("""
                SELECT file_path, file_name, file_size, last_modified, last_processed,
                       entry_count, processing_status, error_message
                FROM jsonl_files ORDER BY file_path
            """).fetchall()
        return [_file_state_from_row(row) for row in rows]

    def should_process_file(self, file_path: str, last_modified: float) -> bool:
        """Decide whether an incremental sync must (re)process a file.

        A file is processed when it has never been seen, when its modification
        time is newer than the recorded one, or when its status is pending or error.
        """
        state = self.get_file_state(file_path)
        if state is None:
            return True
        if last_modified > state.last_modified:
            return True
        return state.status in (FileStatus.PENDING, FileStatus.ERROR)

    # Aggregate queries

    def get_usage_statistics(
        self,
        date_range: DateRange = DateRange.ALL,
        project_path: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UsageStatistics:
        """Compute totals and breakdowns over raw records.

        Args:
            date_range: Range restricting records by timestamp
            project_path: Optional substring filter on the project path
            now: Reference time for the range cutoff

        Returns:
            UsageStatistics for the matching records
        """
        conditions, params = [], []
        predicate, predicate_params = range_predicate(date_range, now)
        if predicate:
            conditions.append(predicate)
            params.extend(predicate_params)
        if project_path:
            conditions.append("instr(project_path, ?) > 0")
            params.append(project_path)
        where = " WHERE " + " AND ".join(conditions) if conditions else ""

        with self._connect("query usage statistics") as conn:
            # One read transaction so every breakdown sees the same snapshot
            with self._transaction(conn, immediate=False):
                totals = conn.execute(f"""
                    SELECT COUNT(*), COUNT(DISTINCT session_id), SUM(cost),
                           SUM(total_tokens), SUM(input_tokens), SUM(output_tokens),
                           SUM(cache_creation_tokens), SUM(cache_read_tokens)
                    FROM usage_entries{where}
                """, params).fetchone()

                model_rows = conn.execute(f"""
                    SELECT model, SUM(cost), SUM(total_tokens), SUM(input_tokens),
                           SUM(output_tokens), SUM(cache_creation_tokens),
                           SUM(cache_read_tokens), COUNT(DISTINCT session_id), COUNT(*)
                    FROM usage_entries{where}
                    GROUP BY model ORDER BY SUM(cost) DESC
                """, params).fetchall()

                date_rows = conn.execute(f"""
                    SELECT date_string, SUM(cost), SUM(total_tokens),
                           COUNT(DISTINCT session_id), GROUP_CONCAT(DISTINCT model)
                    FROM usage_entries{where}
                    GROUP BY date_string ORDER BY date_string
                """, params).fetchall()

                project_rows = self._project_rows(conn, where, params, "total_cost DESC")

        return UsageStatistics(
            total_cost=float(totals[2] or 0),
            total_tokens=totals[3] or 0,
            input_tokens=totals[4] or 0,
            output_tokens=totals[5] or 0,
            cache_creation_tokens=totals[6] or 0,
            cache_read_tokens=totals[7] or 0,
            total_sessions=totals[1] or 0,
            total_requests=totals[0] or 0,
            by_model=[
                ModelUsage(
                    model=row[0],
                    total_cost=float(row[1] or 0),
                    total_tokens=row[2] or 0,
                    input_tokens=row[3] or 0,
                    output_tokens=row[4] or 0,
                    cache_creation_tokens=row[5] or 0,
                    cache_read_tokens=row[6] or 0,
                    session_count=row[7],
                    request_count=row[8],
                )
                for row in model_rows
            ],
            by_date=[
                DailyUsage(
                    date=row[0],
                    total_cost=float(row[1] or 0),
                    total_tokens=row[2] or 0,
                    session_count=row[3],
                    models_used=rollups.split_models(row[4]),
                )
                for row in date_rows
            ],
            by_project=project_rows,
        )

    def get_session_statistics(
        self,
        date_range: DateRange = DateRange.ALL,
        sort_order: SessionSortOrder = SessionSortOrder.COST_DESC,
        now: Optional[datetime] = None,
    ) -> List[ProjectUsage]:
        """Per-project session breakdown sorted by the requested order."""
        predicate, params = range_predicate(date_range, now)
        where = f" WHERE {predicate}" if predicate else ""
        with self._connect("query session statistics") as conn:
            return self._project_rows(conn, where, params, _SESSION_ORDER_SQL[sort_order])

    @staticmethod
    def _project_rows(
        conn: sqlite3.Connection, where: str, params: List, order_by: str
    ) -> List[ProjectUsage]:
        rows = conn.execute(f"""
            SELECT project_path, MAX(project_name) AS project_name, SUM(cost) AS total_cost,
                   SUM(total_tokens), COUNT(DISTINCT session_id), COUNT(*),
                   MAX(timestamp) AS last_used
            FROM usage_entries{where}
            GROUP BY project_path ORDER BY {order_by}
        """, params).fetchall()
        return [
            ProjectUsage(
                project_path=row[0],
                project_name=row[1],
                total_cost=float(row[2] or 0),
                total_tokens=row[3] or 0,
                session_count=row[4],
                request_count=row[5],
                last_used=row[6] or "",
            )
            for row in rows
        ]

    # Rollups

    def regenerate_rollups(self, now: Optional[datetime] = None) -> None:
        """Wipe and rebuild all rollup tables in one transaction."""
        with self._connect("regenerate rollups") as conn:
            with self._transaction(conn):
                rollups.regenerate(conn, now)

    def get_daily_stats(self) -> List[DailyStat]:
        with self._connect("read daily statistics") as conn:
            return rollups.fetch_daily(conn)

    def get_model_stats(self, date_range: DateRange = DateRange.ALL) -> List[ModelStat]:
        with self._connect("read model statistics") as conn:
            return rollups.fetch_models(conn, date_range)

    def get_project_stats(self, date_range: DateRange = DateRange.ALL) -> List[ProjectStat]:
        with self._connect("read project statistics") as conn:
            return rollups.fetch_projects(conn, date_range)

    # Maintenance

    def deduplicate(self) -> int:
        """Remove every keyed row except the lowest id per identity key.

        Returns:
            Number of rows removed
        """
        with self._connect("deduplicate usage records") as conn:
            with self._transaction(conn):
                removed = maintenance.delete_duplicates(conn)
        if removed:
            LOGGER.info("Removed %d duplicate usage records", removed)
        return removed

    def reset_all(self) -> None:
        """Drop and recreate every table, reset sequences and compact the file."""
        with self._connect("reset database") as conn:
            with self._transaction(conn):
                maintenance.drop_tables(conn, TABLES)
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)
            conn.execute("VACUUM")
        LOGGER.info("Reset usage database %s", self.db_path)

    def cleanup_old_records(self, keep_days: int = 365, now: Optional[datetime] = None) -> int:
        """Delete records older than the retention window and rebuild rollups.

        Args:
            keep_days: Number of days of history to keep
            now: Reference time for the cutoff

        Returns:
            Number of usage records removed

        Raises:
            ValueError: If keep_days is not positive
        """
        if keep_days <= 0:
            raise ValueError("keep_days must be > 0")
        with self._connect("cleanup old records") as conn:
            with self._transaction(conn):
                removed = maintenance.delete_older_than(conn, utc_cutoff(keep_days, now))
                rollups.regenerate(conn, now)
        return removed

    def update_date_strings(self) -> int:
        """Recompute the local date string of every record.

        Returns:
            Number of rows whose date string changed
        """
        with self._connect("update date strings") as conn:
            with self._transaction(conn):
                return maintenance.refresh_date_strings(conn)

    def get_store_summary(self) -> StoreSummary:
        """Row counts per table plus file states grouped by status."""
        with self._connect("read store summary") as conn:
            return maintenance.summarize(conn, TABLES)


def _file_state_from_row(row: Tuple) -> FileProcessingState:
    return FileProcessingState(
        file_path=row[0],
        file_name=row[1],
        file_size=row[2],
        last_modified=row[3],
        last_processed=row[4],
        entry_count=row[5],
        status=FileStatus(row[6]),
        error_message=row[7],
    )

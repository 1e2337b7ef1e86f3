"""
Rollup table generation.

Rollups are derived data: they are always deleted and rebuilt from
usage_entries, never patched in place.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional, Tuple

from usage_ledger.core.timestamps import utc_cutoff
from .models import DailyStat, DateRange, ModelStat, ProjectStat

ROLLUP_TABLES = ("daily_statistics", "model_statistics", "project_statistics")


def range_predicate(date_range: DateRange, now: Optional[datetime] = None) -> Tuple[str, List]:
    """SQL predicate and parameters restricting rows to a date range.

    Timestamps are compared as instants, so offsets like +08:00 are honored;
    rows whose timestamp SQLite cannot parse fall outside every bounded range.
    """
    if date_range.days is None:
        return "", []
    return "julianday(timestamp) >= julianday(?)", [utc_cutoff(date_range.days, now)]


def split_models(value: Optional[str]) -> List[str]:
    """Split a GROUP_CONCAT model list into a sorted list."""
    if not value:
        return []
    return sorted({model for model in value.split(",") if model})


def regenerate(conn: sqlite3.Connection, now: Optional[datetime] = None) -> None:
    """Delete and reinsert every rollup row.

    Must run inside a transaction owned by the caller.
    """
    for table in ROLLUP_TABLES:
        conn.execute(f"DELETE FROM {table}")
    conn.execute(
        "DELETE FROM sqlite_sequence WHERE name IN (?, ?, ?)", ROLLUP_TABLES
    )

    conn.execute("""
        INSERT INTO daily_statistics
        (date_string, total_cost, total_tokens, input_tokens, output_tokens,
         cache_creation_tokens, cache_read_tokens, session_count, request_count, models_used)
        SELECT date_string, SUM(cost), SUM(total_tokens), SUM(input_tokens),
               SUM(output_tokens), SUM(cache_creation_tokens), SUM(cache_read_tokens),
               COUNT(DISTINCT session_id), COUNT(*), COALESCE(GROUP_CONCAT(DISTINCT model), '')
        FROM usage_entries
        GROUP BY date_string
    """)

    for date_range in DateRange:
        predicate, params = range_predicate(date_range, now)
        where = f" WHERE {predicate}" if predicate else ""

        conn.execute(f"""
            INSERT INTO model_statistics
            (model, date_range, total_cost, total_tokens, input_tokens, output_tokens,
             cache_creation_tokens, cache_read_tokens, session_count, request_count)
            SELECT model, ?, SUM(cost), SUM(total_tokens), SUM(input_tokens),
                   SUM(output_tokens), SUM(cache_creation_tokens), SUM(cache_read_tokens),
                   COUNT(DISTINCT session_id), COUNT(*)
            FROM usage_entries{where}
            GROUP BY model
        """, [date_range.value] + params)

        conn.execute(f"""
            INSERT INTO project_statistics
            (project_path, project_name, date_range, total_cost, total_tokens,
             session_count, request_count, last_used)
            SELECT project_path, MAX(project_name), ?, SUM(cost), SUM(total_tokens),
                   COUNT(DISTINCT session_id), COUNT(*), MAX(timestamp)
            FROM usage_entries{where}
            GROUP BY project_path
        """, [date_range.value] + params)


def fetch_daily(conn: sqlite3.Connection) -> List[DailyStat]:
    rows = conn.execute("""
        SELECT date_string, total_cost, total_tokens, input_tokens, output_tokens,
               cache_creation_tokens, cache_read_tokens, session_count, request_count,
               models_used
        FROM daily_statistics ORDER BY date_string
    """).fetchall()
    return [
        DailyStat(
            date_string=row[0],
            total_cost=row[1],
            total_tokens=row[2],
            input_tokens=row[3],
            output_tokens=row[4],
            cache_creation_tokens=row[5],
            cache_read_tokens=row[6],
            session_count=row[7],
            request_count=row[8],
            models_used=split_models(row[9]),
        )
        for row in rows
    ]


def fetch_models(conn: sqlite3.Connection, date_range: DateRange) -> List[ModelStat]:
    rows = conn.execute("""
        SELECT model, total_cost, total_tokens, input_tokens, output_tokens,
               cache_creation_tokens, cache_read_tokens, session_count, request_count
        FROM model_statistics WHERE date_range = ?
        ORDER BY total_cost DESC
    """, (date_range.value,)).fetchall()
    return [
        ModelStat(
            model=row[0],
            date_range=date_range,
            total_cost=row[1],
            total_tokens=row[2],
            input_tokens=row[3],
            output_tokens=row[4],
            cache_creation_tokens=row[5],
            cache_read_tokens=row[6],
            session_count=row[7],
            request_count=row[8],
        )
        for row in rows
    ]


def fetch_projects(conn: sqlite3.Connection, date_range: DateRange) -> List[ProjectStat]:
    rows = conn.execute("""
        SELECT project_path, project_name, total_cost, total_tokens,
               session_count, request_count, last_used
        FROM project_statistics WHERE date_range = ?
        ORDER BY total_cost DESC
    """, (date_range.value,)).fetchall()
    return [
        ProjectStat(
            project_path=row[0],
            project_name=row[1],
            date_range=date_range,
            total_cost=row[2],
            total_tokens=row[3],
            session_count=row[4],
            request_count=row[5],
            last_used=row[6] or "",
        )
        for row in rows
    ]

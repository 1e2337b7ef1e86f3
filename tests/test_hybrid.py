"""
Unit tests for the store-first hybrid read path.
"""

import os
import tempfile
from unittest.mock import patch

import pytest

from usage_ledger.core.access import LocalDirectoryBroker
from usage_ledger.core.cache import FileCache
from usage_ledger.core.errors import DirectoryNotFoundError
from usage_ledger.core.hybrid import DataSource, HybridUsageService
from usage_ledger.core.ingestion import IngestionCoordinator
from usage_ledger.storage.errors import StoreBusyError, StoreDataCorruptionError
from usage_ledger.storage.models import DateRange, SessionSortOrder
from usage_ledger.storage.repository import UsageRepository


def _service(temp_dir: str, projects_dir: str = None) -> HybridUsageService:
    projects_dir = projects_dir or os.path.join(temp_dir, "projects")
    return HybridUsageService(
        repository=UsageRepository(os.path.join(temp_dir, "test.db")),
        coordinator=IngestionCoordinator(cache=FileCache()),
        broker=LocalDirectoryBroker(projects_dir),
    )


def _write_logs(temp_dir, make_line, write_jsonl, count=20):
    lines = [
        make_line(message_id=f"msg_{i}", request_id=f"req_{i}", cost=0.5)
        for i in range(count)
    ]
    # Half in each file, plus one duplicate line repeated across files
    write_jsonl(os.path.join(temp_dir, "projects", "app", "a.jsonl"), lines[: count // 2])
    write_jsonl(os.path.join(temp_dir, "projects", "app", "b.jsonl"), lines[count // 2:] + [lines[0]])


class TestHybridUsageService:
    """Test store-first reads with file fallback."""

    def test_empty_store_falls_back_to_files(self, make_line, write_jsonl):
        """With no stored rows, statistics come from the logs."""
        with tempfile.TemporaryDirectory() as temp_dir:
            _write_logs(temp_dir, make_line, write_jsonl)
            service = _service(temp_dir)

            statistics = service.get_statistics(DateRange.ALL)

            assert service.last_source is DataSource.FILES
            assert statistics.total_requests == 20
            assert statistics.total_cost == pytest.approx(10.0)
            assert statistics.by_project[0].project_path == "/app"

    def test_store_with_data_is_preferred(self, make_line, write_jsonl, make_record):
        with tempfile.TemporaryDirectory() as temp_dir:
            _write_logs(temp_dir, make_line, write_jsonl)
            service = _service(temp_dir)
            service.repository.initialize_schema()
            service.repository.insert_usage_records([make_record(0), make_record(1)])

            statistics = service.get_statistics()

            assert service.last_source is DataSource.STORE
            assert statistics.total_requests == 2
            assert service.data_source() is DataSource.STORE

    def test_recoverable_store_error_falls_back(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            _write_logs(temp_dir, make_line, write_jsonl)
            service = _service(temp_dir)

            with patch.object(
                service.repository, "count_usage_records", side_effect=StoreBusyError("locked")
            ):
                statistics = service.get_statistics()

            assert service.last_source is DataSource.FILES
            assert statistics.total_requests == 20

    def test_fatal_store_error_propagates(self, make_line, write_jsonl):
        """Corruption is never masked by the fallback."""
        with tempfile.TemporaryDirectory() as temp_dir:
            _write_logs(temp_dir, make_line, write_jsonl)
            service = _service(temp_dir)

            with patch.object(
                service.repository,
                "count_usage_records",
                side_effect=StoreDataCorruptionError("malformed"),
            ):
                with pytest.raises(StoreDataCorruptionError):
                    service.get_statistics()
                with pytest.raises(StoreDataCorruptionError):
                    service.data_source()

    def test_fallback_needs_projects_root(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            service = _service(temp_dir, projects_dir=os.path.join(temp_dir, "missing"))
            with pytest.raises(DirectoryNotFoundError):
                service.get_statistics()

    def test_project_filter_on_fallback(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            _write_logs(temp_dir, make_line, write_jsonl)
            write_jsonl(
                os.path.join(temp_dir, "projects", "other", "c.jsonl"),
                [make_line(message_id="o1", request_id="o1")],
            )
            service = _service(temp_dir)

            assert service.get_statistics(project_path="other").total_requests == 1

    def test_date_range_on_fallback(self, make_line, write_jsonl, recent_timestamp):
        with tempfile.TemporaryDirectory() as temp_dir:
            write_jsonl(os.path.join(temp_dir, "projects", "app", "a.jsonl"), [
                make_line(message_id="new", timestamp=recent_timestamp(1)),
                make_line(message_id="old", timestamp=recent_timestamp(60)),
            ])
            service = _service(temp_dir)

            assert service.get_statistics(DateRange.LAST_7_DAYS).total_requests == 1
            assert service.get_statistics(DateRange.ALL).total_requests == 2

    def test_session_breakdown_on_fallback(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            write_jsonl(os.path.join(temp_dir, "projects", "zeta", "a.jsonl"), [
                make_line(message_id="z1", cost=1.0),
            ])
            write_jsonl(os.path.join(temp_dir, "projects", "alpha", "a.jsonl"), [
                make_line(message_id="a1", cost=2.0),
            ])
            service = _service(temp_dir)

            sessions = service.get_session_breakdown(sort_order=SessionSortOrder.NAME_ASC)

            assert [s.project_name for s in sessions] == ["alpha", "zeta"]
            assert service.last_source is DataSource.FILES

    def test_validate_access(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            service = _service(temp_dir, projects_dir=os.path.join(temp_dir, "missing"))
            assert service.validate_access()
            assert service.data_source() is DataSource.FILES

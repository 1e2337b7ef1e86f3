"""
Integration tests for ingestion runs.
"""

import os
import tempfile
from unittest.mock import patch

import pytest

from usage_ledger.core.access import LocalDirectoryBroker
from usage_ledger.core.cancellation import CancellationToken
from usage_ledger.core.errors import DirectoryNotFoundError, SyncError, SyncErrorKind
from usage_ledger.core.ingestion import IngestionCoordinator
from usage_ledger.core.pipeline import IngestionPipeline, SyncType
from usage_ledger.storage.errors import StoreBusyError, StoreDataCorruptionError
from usage_ledger.storage.models import FileStatus
from usage_ledger.storage.repository import UsageRepository


def _pipeline(temp_dir: str, batch_size: int = 3) -> IngestionPipeline:
    return IngestionPipeline(
        repository=UsageRepository(os.path.join(temp_dir, "test.db")),
        coordinator=IngestionCoordinator(max_concurrent_files=2),
        broker=LocalDirectoryBroker(os.path.join(temp_dir, "projects")),
        batch_size=batch_size,
    )


def _three_files(temp_dir, make_line, write_jsonl):
    """10 valid lines, 5 valid plus 2 malformed, and an empty file."""
    projects = os.path.join(temp_dir, "projects")
    full = write_jsonl(
        os.path.join(projects, "app", "full.jsonl"),
        [make_line(message_id=f"a{i}", request_id=f"ra{i}") for i in range(10)],
    )
    mixed_lines = [make_line(message_id=f"b{i}", request_id=f"rb{i}") for i in range(5)]
    mixed_lines.insert(2, "{broken json")
    mixed_lines.append('{"timestamp": "2024-05-01T10:00:00Z", "message": "oops"}')
    mixed = write_jsonl(os.path.join(projects, "api", "mixed.jsonl"), mixed_lines)
    empty = write_jsonl(os.path.join(projects, "api", "empty.jsonl"), [])
    return full, mixed, empty


class TestIngestionPipeline:
    """Test full and incremental runs end to end."""

    def test_full_run(self, make_line, write_jsonl):
        """Valid lines are stored, malformed ones counted, every file completed."""
        with tempfile.TemporaryDirectory() as temp_dir:
            full, mixed, empty = _three_files(temp_dir, make_line, write_jsonl)
            pipeline = _pipeline(temp_dir)

            report = pipeline.run_full()

            assert report.sync_type is SyncType.FULL
            assert report.total_files == 3
            assert report.processed_files == 3
            assert report.inserted_entries == 15
            assert report.skipped_lines == 2
            assert report.error_files == 0
            assert report.success
            assert report.finished_at is not None

            repository = pipeline.repository
            assert repository.count_usage_records() == 15
            states = {state.file_path: state for state in repository.list_file_states()}
            assert states[full].status == FileStatus.COMPLETED
            assert states[mixed].status == FileStatus.COMPLETED
            assert states[empty].status == FileStatus.COMPLETED
            assert [states[p].entry_count for p in (full, mixed, empty)] == [10, 5, 0]

    def test_rollups_are_regenerated(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            _three_files(temp_dir, make_line, write_jsonl)
            pipeline = _pipeline(temp_dir)
            pipeline.run_full()

            daily = pipeline.repository.get_daily_stats()
            assert sum(day.request_count for day in daily) == 15
            projects = {p.project_path for p in pipeline.repository.get_project_stats()}
            assert projects == {"/app", "/api"}

    def test_duplicate_identity_keeps_first_seen(self, make_line, write_jsonl):
        """Two lines with the same identity key persist as one row."""
        with tempfile.TemporaryDirectory() as temp_dir:
            write_jsonl(os.path.join(temp_dir, "projects", "app", "a.jsonl"), [
                make_line(message_id="m1", request_id="r1", cost=0.25),
                make_line(message_id="m1", request_id="r1", cost=0.75),
            ])
            pipeline = _pipeline(temp_dir)

            report = pipeline.run_full()

            records = pipeline.repository.fetch_usage_records()
            assert len(records) == 1
            assert records[0].cost == 0.25
            assert report.duplicate_entries == 1
            assert report.inserted_entries == 1

    def test_full_run_is_idempotent(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            _three_files(temp_dir, make_line, write_jsonl)
            pipeline = _pipeline(temp_dir)

            pipeline.run_full()
            second = pipeline.run_full()

            assert second.inserted_entries == 0
            assert second.processed_files == 3
            assert pipeline.repository.count_usage_records() == 15

    def test_incremental_skips_unchanged_files(self, make_line, write_jsonl):
        """Only new or modified files are reprocessed."""
        with tempfile.TemporaryDirectory() as temp_dir:
            full, _, _ = _three_files(temp_dir, make_line, write_jsonl)
            pipeline = _pipeline(temp_dir)
            pipeline.run_full()

            unchanged = pipeline.run_incremental()
            assert unchanged.skipped_files == 3
            assert unchanged.processed_files == 0

            write_jsonl(full, [make_line(message_id=f"a{i}", request_id=f"ra{i}") for i in range(12)])
            stat = os.stat(full)
            os.utime(full, (stat.st_atime, stat.st_mtime + 10))

            changed = pipeline.run_incremental()
            assert changed.sync_type is SyncType.INCREMENTAL
            assert changed.skipped_files == 2
            assert changed.processed_files == 1
            assert changed.inserted_entries == 2
            assert pipeline.repository.get_file_state(full).entry_count == 12

    def test_incremental_retries_failed_files(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            full, _, _ = _three_files(temp_dir, make_line, write_jsonl)
            pipeline = _pipeline(temp_dir)
            pipeline.run_full()
            pipeline.repository.mark_file_error(full, "earlier failure")

            report = pipeline.run_incremental()

            assert report.processed_files == 1
            assert pipeline.repository.get_file_state(full).status == FileStatus.COMPLETED

    def test_missing_projects_root(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            with pytest.raises(DirectoryNotFoundError):
                _pipeline(temp_dir).run_full()

    def test_cancelled_run(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            _three_files(temp_dir, make_line, write_jsonl)
            token = CancellationToken()
            token.cancel()

            with pytest.raises(SyncError) as excinfo:
                _pipeline(temp_dir).run_full(cancel_token=token)
            assert excinfo.value.kind is SyncErrorKind.CANCELLED

    def test_recoverable_insert_failure_marks_file(self, make_line, write_jsonl):
        """A recoverable store failure fails the file, not the run."""
        with tempfile.TemporaryDirectory() as temp_dir:
            _three_files(temp_dir, make_line, write_jsonl)
            pipeline = _pipeline(temp_dir, batch_size=100)

            with patch.object(
                pipeline.repository, "insert_usage_records", side_effect=StoreBusyError("locked")
            ):
                report = pipeline.run_full()

            # the empty file still writes once to clear its earlier unkeyed rows
            assert report.error_files == 3
            assert report.processed_files == 0
            assert not report.success
            statuses = sorted(s.status.value for s in pipeline.repository.list_file_states())
            assert statuses == ["error", "error", "error"]

    def test_fatal_insert_failure_aborts(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            _three_files(temp_dir, make_line, write_jsonl)
            pipeline = _pipeline(temp_dir)

            with patch.object(
                pipeline.repository,
                "insert_usage_records",
                side_effect=StoreDataCorruptionError("malformed"),
            ):
                with pytest.raises(SyncError) as excinfo:
                    pipeline.run_full()
            assert excinfo.value.kind is SyncErrorKind.DATABASE_UPDATE_FAILED

    def test_report_summary(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            _three_files(temp_dir, make_line, write_jsonl)
            report = _pipeline(temp_dir).run_full()
            assert "15 inserted" in report.summary()
            assert report.duration >= 0.0


class TestOutOfRangeValues:
    """Lines the store cannot represent are skipped, never fatal."""

    def test_oversized_token_count_is_skipped(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            projects = os.path.join(temp_dir, "projects")
            write_jsonl(os.path.join(projects, "app", "good.jsonl"), [
                make_line(message_id=f"g{i}", request_id=f"rg{i}") for i in range(3)
            ])
            bad = write_jsonl(os.path.join(projects, "app", "bad.jsonl"), [
                make_line(message_id="b0", request_id="rb0"),
                make_line(message_id="b1", request_id="rb1", input_tokens=10 ** 20),
            ])
            pipeline = _pipeline(temp_dir)

            report = pipeline.run_full()

            assert report.success
            assert report.inserted_entries == 4
            assert report.skipped_lines == 1
            state = pipeline.repository.get_file_state(bad)
            assert state.status == FileStatus.COMPLETED
            assert state.entry_count == 1
            assert sum(day.request_count for day in pipeline.repository.get_daily_stats()) == 4

    @pytest.mark.parametrize("cost", [float("inf"), float("-inf"), float("nan")])
    def test_non_finite_cost_is_skipped(self, make_line, write_jsonl, cost):
        """Entry counts match stored rows and totals stay finite."""
        with tempfile.TemporaryDirectory() as temp_dir:
            path = write_jsonl(os.path.join(temp_dir, "projects", "app", "a.jsonl"), [
                make_line(message_id="m0", request_id="r0", cost=0.5),
                make_line(message_id="m1", request_id="r1", cost=cost),
                make_line(message_id="m2", request_id="r2", cost=0.5),
            ])
            pipeline = _pipeline(temp_dir)

            report = pipeline.run_full()

            assert report.inserted_entries == 2
            assert report.skipped_lines == 1
            state = pipeline.repository.get_file_state(path)
            assert state.status == FileStatus.COMPLETED
            assert state.entry_count == pipeline.repository.count_usage_records() == 2
            assert pipeline.repository.get_usage_statistics().total_cost == pytest.approx(1.0)


class TestUnkeyedRecords:
    """Re-reading a file keeps one stored row per unkeyed line."""

    def _unkeyed_file(self, temp_dir, make_line, write_jsonl, count=5):
        return write_jsonl(os.path.join(temp_dir, "projects", "app", "a.jsonl"), [
            make_line(message_id=None, request_id=None, cost=0.1) for _ in range(count)
        ])

    def test_repeated_full_runs(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            self._unkeyed_file(temp_dir, make_line, write_jsonl)
            pipeline = _pipeline(temp_dir)

            counts = []
            for _ in range(3):
                pipeline.run_full()
                counts.append(pipeline.repository.count_usage_records())

            assert counts == [5, 5, 5]
            assert pipeline.repository.get_usage_statistics().total_requests == 5

    def test_modified_file_is_replaced(self, make_line, write_jsonl):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = self._unkeyed_file(temp_dir, make_line, write_jsonl)
            pipeline = _pipeline(temp_dir)
            pipeline.run_full()

            self._unkeyed_file(temp_dir, make_line, write_jsonl, count=7)
            stat = os.stat(path)
            os.utime(path, (stat.st_atime, stat.st_mtime + 10))
            pipeline.run_incremental()

            assert pipeline.repository.count_usage_records() == 7

    def test_other_files_are_untouched(self, make_line, write_jsonl):
        """Only the re-read file's unkeyed rows are replaced."""
        with tempfile.TemporaryDirectory() as temp_dir:
            self._unkeyed_file(temp_dir, make_line, write_jsonl)
            other = write_jsonl(os.path.join(temp_dir, "projects", "api", "b.jsonl"), [
                make_line(message_id=None, request_id=None) for _ in range(2)
            ])
            pipeline = _pipeline(temp_dir)
            pipeline.run_full()

            pipeline.repository.mark_file_error(other, "retry me")
            pipeline.run_incremental()

            assert pipeline.repository.count_usage_records() == 7

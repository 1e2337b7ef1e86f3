"""
Unit tests for record models and timestamp helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from usage_ledger.core.timestamps import (
    epoch_to_iso,
    local_date_string,
    parse_timestamp,
    utc_cutoff,
)
from usage_ledger.storage.models import (
    MAX_TOKEN_COUNT,
    UNKNOWN_PROJECT,
    DateRange,
    UsageRecord,
    project_name_from_path,
)


class TestUsageRecord:
    """Test UsageRecord validation and derived fields."""

    @pytest.mark.parametrize("field_name", [
        "input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens", "cost",
    ])
    def test_negative_values_rejected(self, make_record, field_name):
        with pytest.raises(ValueError, match=f"{field_name} must be >= 0"):
            make_record(**{field_name: -1})

    def test_counters_must_fit_an_integer_column(self, make_record):
        assert make_record(input_tokens=MAX_TOKEN_COUNT).input_tokens == MAX_TOKEN_COUNT
        with pytest.raises(ValueError, match="output_tokens must be <="):
            make_record(output_tokens=MAX_TOKEN_COUNT + 1)

    @pytest.mark.parametrize("cost", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_cost_rejected(self, make_record, cost):
        with pytest.raises(ValueError, match="cost must be finite"):
            make_record(cost=cost)

    def test_identity_key(self, make_record):
        assert make_record(3).identity_key == ("msg_3", "req_3")
        assert make_record(message_id=None).identity_key is None
        assert make_record(request_id="").identity_key is None

    def test_project_name(self, make_record):
        assert make_record(project_path="/Users/dev/my-app").project_name == "my-app"
        assert project_name_from_path("") == UNKNOWN_PROJECT
        assert project_name_from_path("/") == UNKNOWN_PROJECT

    def test_records_are_immutable(self, make_record):
        record = make_record()
        with pytest.raises(Exception):
            record.cost = 10.0


class TestDateRange:
    """Test date range bounds."""

    def test_days(self):
        assert DateRange.ALL.days is None
        assert DateRange.LAST_7_DAYS.days == 7
        assert DateRange.LAST_30_DAYS.days == 30

    def test_start_date(self):
        now = datetime(2024, 5, 31, 12, tzinfo=timezone.utc)
        assert DateRange.ALL.start_date(now) is None
        assert DateRange.LAST_7_DAYS.start_date(now) == now - timedelta(days=7)


class TestTimestamps:
    """Test timestamp parsing helpers."""

    @pytest.mark.parametrize("value, expected", [
        ("2024-05-01T10:00:00.123Z", datetime(2024, 5, 1, 10, 0, 0, 123000, tzinfo=timezone.utc)),
        ("2024-05-01T10:00:00Z", datetime(2024, 5, 1, 10, tzinfo=timezone.utc)),
        ("2024-05-01T12:00:00+02:00", datetime(2024, 5, 1, 10, tzinfo=timezone.utc)),
        ("2024-05-01T10:00:00", datetime(2024, 5, 1, 10, tzinfo=timezone.utc)),
        ("2024-05-01 10:00:00", datetime(2024, 5, 1, 10, tzinfo=timezone.utc)),
    ])
    def test_parse_formats(self, value, expected):
        assert parse_timestamp(value) == expected

    @pytest.mark.parametrize("value", [None, "", "not a time", 12345])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None

    def test_epoch_seconds_and_millis(self):
        assert epoch_to_iso(1714557600) == "2024-05-01T10:00:00.000Z"
        assert epoch_to_iso(1714557600123) == "2024-05-01T10:00:00.123Z"

    def test_local_date_string(self):
        moment = datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
        expected = moment.astimezone().strftime("%Y-%m-%d")
        assert local_date_string("2024-05-01T10:00:00Z") == expected
        assert local_date_string("2024-05-01garbage") == "2024-05-01"

    def test_utc_cutoff(self):
        now = datetime(2024, 5, 31, 12, 30, tzinfo=timezone.utc)
        assert utc_cutoff(30, now) == "2024-05-01T12:30:00"
        assert utc_cutoff(1, datetime(2024, 5, 2)) == "2024-05-01T00:00:00"

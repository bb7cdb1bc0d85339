"""Unit tests for timestamp normalisation."""
import pytest
from datetime import datetime, timezone
from types import SimpleNamespace

from app.utils.timestamps import TimestampError, isoformat, to_datetime, to_epoch_millis

MOMENT = datetime(2024, 3, 1, 12, 0, 0, 500000, tzinfo=timezone.utc)


class TestToDatetime:
    """Every stored timestamp shape maps to the same aware UTC datetime."""

    def test_aware_datetime_passes_through(self):
        assert to_datetime(MOMENT) == MOMENT

    def test_naive_datetime_taken_as_utc(self):
        naive = MOMENT.replace(tzinfo=None)
        assert to_datetime(naive) == MOMENT

    def test_seconds_object(self):
        value = {"seconds": 1709294400, "nanoseconds": 500_000_000}
        assert to_datetime(value) == MOMENT

    def test_underscore_seconds_object(self):
        value = {"_seconds": 1709294400, "_nanoseconds": 500_000_000}
        assert to_datetime(value) == MOMENT

    def test_seconds_attribute_object(self):
        value = SimpleNamespace(seconds=1709294400, nanoseconds=500_000_000)
        assert to_datetime(value) == MOMENT

    def test_numeric_is_epoch_millis(self):
        assert to_datetime(1709294400500) == MOMENT

    def test_iso_string_with_z(self):
        assert to_datetime("2024-03-01T12:00:00.500Z") == MOMENT

    def test_iso_string_with_offset(self):
        assert to_datetime("2024-03-01T13:00:00.500+01:00") == MOMENT

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, {"nanoseconds": 1}, [1, 2]])
    def test_unreadable_values_raise(self, value):
        with pytest.raises(TimestampError):
            to_datetime(value)


class TestSerialisation:
    def test_epoch_millis(self):
        assert to_epoch_millis(MOMENT) == 1709294400500

    def test_isoformat_round_trips_through_to_datetime(self):
        assert to_datetime(isoformat(MOMENT)) == MOMENT

"""
tests/test_timestamps.py

Tests for ingest/timestamps.py — accepted layouts and epoch conversion.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from attackpod.proxy.ingest.timestamps import (
    TimestampError,
    parse_attack_timestamp,
    to_epoch_millis,
)

# 2024-01-01T10:00:00Z
TEN_AM_UTC_MS = 1704103200000


class TestRfc3339:

    def test_utc_designator(self):
        ts = parse_attack_timestamp("2024-01-01T10:00:00Z")
        assert ts == datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
        assert to_epoch_millis(ts) == TEN_AM_UTC_MS

    def test_numeric_offset_same_instant(self):
        ts = parse_attack_timestamp("2024-01-01T12:00:00+02:00")
        assert ts.utcoffset() == timedelta(hours=2)
        assert to_epoch_millis(ts) == TEN_AM_UTC_MS

    def test_negative_offset(self):
        ts = parse_attack_timestamp("2024-01-01T05:30:00-04:30")
        assert to_epoch_millis(ts) == TEN_AM_UTC_MS

    def test_nanosecond_fraction_truncated(self):
        ts = parse_attack_timestamp("2024-01-01T10:00:00.123456789Z")
        assert ts.microsecond == 123456
        assert to_epoch_millis(ts) == TEN_AM_UTC_MS + 123

    def test_short_fraction_padded(self):
        ts = parse_attack_timestamp("2024-01-01T10:00:00.5Z")
        assert ts.microsecond == 500000


class TestNaiveLocal:

    def test_interpreted_in_local_zone(self):
        ts = parse_attack_timestamp("2024-01-01T10:00:00.250000")
        expected = datetime(2024, 1, 1, 10, 0, 0, 250000).astimezone()
        assert ts.tzinfo is not None
        assert ts == expected

    def test_both_layouts_denote_same_instant(self):
        local = datetime(2024, 6, 15, 8, 45, 12, 345678).astimezone()
        naive_text = local.replace(tzinfo=None).isoformat()
        zoned_text = local.isoformat()
        assert to_epoch_millis(parse_attack_timestamp(naive_text)) == \
            to_epoch_millis(parse_attack_timestamp(zoned_text))


class TestRejected:

    def test_none_is_absent(self):
        assert parse_attack_timestamp(None) is None

    @pytest.mark.parametrize("value", [
        "",
        "yesterday",
        "01.01.2024 10:00:00",
        "2024-01-01 10:00:00",
        "2024-13-01T10:00:00Z",
        "2024-02-30T10:00:00",
        "2024-01-01T10:00:00+24:00",
        "2024-01-01T10:00:00.1234567890Z",
    ])
    def test_unparseable(self, value):
        with pytest.raises(TimestampError, match="failed to parse time"):
            parse_attack_timestamp(value)

    def test_non_string(self):
        with pytest.raises(TimestampError):
            parse_attack_timestamp(1704103200)


class TestEpochMillis:

    def test_epoch_is_zero(self):
        assert to_epoch_millis(datetime(1970, 1, 1, tzinfo=timezone.utc)) == 0

    def test_floors_before_epoch(self):
        moment = datetime(1969, 12, 31, 23, 59, 59, 999500, tzinfo=timezone.utc)
        assert to_epoch_millis(moment) == -1

    def test_drops_sub_millisecond(self):
        moment = datetime(2024, 1, 1, 10, 0, 0, 999, tzinfo=timezone.utc)
        assert to_epoch_millis(moment) == TEN_AM_UTC_MS


class TestRangeEdges:

    def test_offset_past_end_of_range(self):
        ts = parse_attack_timestamp("9999-12-31T23:59:59-05:00")
        assert to_epoch_millis(ts) == 253402318799000

    def test_start_of_range(self):
        ts = parse_attack_timestamp("0001-01-01T00:00:00Z")
        assert to_epoch_millis(ts) == -62135596800000

    @pytest.mark.parametrize("value", ["0001-01-01T00:00:00", "9999-12-31T23:59:59.999999"])
    def test_naive_edges_never_overflow(self, value):
        # depending on the local zone the value is either representable or rejected
        try:
            ts = parse_attack_timestamp(value)
        except TimestampError:
            return
        assert ts.tzinfo is not None

"""Tests for the cleanup (sweep-and-delete) phase."""

import json
from datetime import timedelta

import pytest

from kvsweep.budget import TimeBudget
from kvsweep.cleanup import Partition, default_partitions, examine, parse_timestamp, sweep_step
from kvsweep.config import MaintenanceConfig
from kvsweep.errors import ParseError
from kvsweep.outcomes import RecordOutcome
from kvsweep.store import fetch_page

DAY = timedelta(days=1)
HOUR = timedelta(hours=1)


def remaining(store, prefix):
    return fetch_page(store, prefix, 1000, None).keys


class TestParseTimestamp:
    """Timestamp extraction from stored values."""

    def test_iso_with_z_suffix(self):
        ts = parse_timestamp(json.dumps({"timestamp": "2024-06-14T12:00:00Z"}))
        assert ts.isoformat() == "2024-06-14T12:00:00+00:00"

    def test_naive_iso_is_utc(self):
        ts = parse_timestamp(json.dumps({"timestamp": "2024-06-14T12:00:00"}))
        assert ts.utcoffset() == timedelta(0)

    def test_epoch_milliseconds(self):
        ts = parse_timestamp(json.dumps({"timestamp": 1718366400000}))
        assert ts.isoformat() == "2024-06-14T12:00:00+00:00"

    def test_created_at_fallback(self):
        ts = parse_timestamp(json.dumps({"createdAt": "2024-06-14T12:00:00+00:00"}))
        assert ts.day == 14

    @pytest.mark.parametrize("value", [
        "not json",
        json.dumps([1, 2, 3]),
        json.dumps({"count": 3}),
        json.dumps({"timestamp": "yesterday"}),
        json.dumps({"timestamp": True}),
        json.dumps({"timestamp": {"nested": 1}}),
    ])
    def test_malformed_values_raise_parse_error(self, value):
        with pytest.raises(ParseError):
            parse_timestamp(value)


class TestExamine:
    """Per-record outcomes."""

    def test_expired_entry_deleted(self, store, seed, aged, now):
        seed("ratelimit:1.2.3.4", {"timestamp": aged(2 * DAY)})

        outcome = examine(store, "ratelimit:1.2.3.4", Partition("ratelimit:", DAY), now)

        assert outcome is RecordOutcome.DELETED
        assert store.get("ratelimit:1.2.3.4") is None

    def test_young_entry_kept(self, store, seed, aged, now):
        seed("ratelimit:1.2.3.4", {"timestamp": aged(HOUR)})

        outcome = examine(store, "ratelimit:1.2.3.4", Partition("ratelimit:", DAY), now)

        assert outcome is RecordOutcome.KEPT
        assert store.get("ratelimit:1.2.3.4") is not None

    def test_unparsable_entry_skipped_and_left_in_place(self, store, seed, now):
        seed("ratelimit:bad", "{{{")

        outcome = examine(store, "ratelimit:bad", Partition("ratelimit:", DAY), now)

        assert outcome is RecordOutcome.SKIPPED
        assert store.get("ratelimit:bad") == "{{{"

    def test_vanished_entry_reported_missing(self, store, now):
        outcome = examine(store, "ratelimit:gone", Partition("ratelimit:", DAY), now)

        assert outcome is RecordOutcome.MISSING


class TestSweepStep:
    """Resumable sweeping across partitions."""

    def test_deletes_old_keeps_young_across_partitions(self, store, seed, aged, now, clock, config):
        seed("ratelimit:old", {"timestamp": aged(25 * HOUR)})
        seed("ratelimit:new", {"timestamp": aged(23 * HOUR)})
        seed("botdetect:old", {"timestamp": aged(8 * DAY)})
        seed("botdetect:new", {"timestamp": aged(6 * DAY)})
        seed("captcha:old", {"createdAt": aged(2 * HOUR)})
        seed("captcha:new", {"createdAt": aged(timedelta(minutes=30))})
        seed("captcha:junk", "not json")
        seed("subscriber:a@example.com", {"timestamp": aged(365 * DAY)})

        result = sweep_step(store, default_partitions(config), None, 0, TimeBudget(1000, clock), now=now)

        assert result.completed is True
        assert result.count == 3
        assert result.kept == 3
        assert result.skipped == 1
        assert remaining(store, "ratelimit:") == ["ratelimit:new"]
        assert remaining(store, "botdetect:") == ["botdetect:new"]
        assert sorted(remaining(store, "captcha:")) == ["captcha:junk", "captcha:new"]
        # Subscribers are never swept
        assert store.get("subscriber:a@example.com") is not None

    def test_boundary_age_is_kept(self, store, seed, aged, now, clock):
        seed("captcha:edge", {"timestamp": aged(HOUR)})

        result = sweep_step(store, [Partition("captcha:", HOUR)], None, 0, TimeBudget(1000, clock), now=now)

        assert result.count == 0
        assert store.get("captcha:edge") is not None

    def test_budget_stops_between_pages_with_next_cursor(self, store, seed, aged, now, clock, ticking):
        """45 expired keys, page size 5, budget for 5 pages."""
        for i in range(45):
            seed(f"ratelimit:{i:03d}", {"timestamp": aged(2 * DAY)})
        source = ticking(store, clock, list_ms=1.0)
        partitions = [Partition("ratelimit:", DAY)]

        first = sweep_step(source, partitions, None, 0, TimeBudget(5, clock), now=now)

        assert first.completed is False
        assert first.count == 25
        assert first.partition_index == 0
        assert fetch_page(store, "ratelimit:", 5, first.cursor).keys == [
            f"ratelimit:{i:03d}" for i in range(25, 30)
        ]

        second = sweep_step(
            source, partitions, first.cursor, first.partition_index, TimeBudget(1000, clock),
            page_offset=first.page_offset, now=now,
        )

        assert second.completed is True
        assert second.count == 20
        assert first.count + second.count == 45
        assert remaining(store, "ratelimit:") == []

    def test_budget_stops_mid_page_and_resumes_exactly(self, store, seed, aged, now, clock, ticking):
        # Alternate kept and expired entries so the page offset matters
        for i in range(10):
            age = 2 * DAY if i % 2 else HOUR
            seed(f"ratelimit:{i:02d}", {"timestamp": aged(age)})
        source = ticking(store, clock, get_ms=1.0)
        partitions = [Partition("ratelimit:", DAY)]

        first = sweep_step(source, partitions, None, 0, TimeBudget(2.5, clock), now=now)

        assert first.completed is False
        assert first.cursor is None  # still on the first page
        assert first.count + first.kept == 3
        assert first.page_offset == first.kept

        second = sweep_step(
            source, partitions, first.cursor, first.partition_index, TimeBudget(1000, clock),
            page_offset=first.page_offset, now=now,
        )

        assert second.completed is True
        assert first.kept + second.kept == 5
        assert first.count + second.count == 5
        assert remaining(store, "ratelimit:") == [f"ratelimit:{i:02d}" for i in range(0, 10, 2)]

    def test_resumes_in_later_partition(self, store, seed, aged, now, clock, config):
        seed("ratelimit:old", {"timestamp": aged(2 * DAY)})
        seed("captcha:old", {"timestamp": aged(2 * HOUR)})

        # partition_index 2 (captcha) must not touch earlier partitions
        result = sweep_step(store, default_partitions(config), None, 2, TimeBudget(1000, clock), now=now)

        assert result.completed is True
        assert result.count == 1
        assert store.get("ratelimit:old") is not None
        assert store.get("captcha:old") is None

    def test_zero_budget_still_makes_progress(self, store, seed, aged, now, clock, ticking):
        """Even an exhausted budget handles one key per step, so sweeps finish."""
        for i in range(7):
            age = 2 * DAY if i % 3 == 0 else HOUR
            seed(f"ratelimit:{i}", {"timestamp": aged(age)})
        source = ticking(store, clock, get_ms=1.0)
        partitions = [Partition("ratelimit:", DAY)]

        cursor, index, offset = None, 0, 0
        steps = 0
        deleted = 0
        while True:
            steps += 1
            result = sweep_step(source, partitions, cursor, index, TimeBudget(0, clock), page_offset=offset, now=now)
            deleted += result.count
            if result.completed:
                break
            cursor, index, offset = result.cursor, result.partition_index, result.page_offset
            assert steps < 50

        assert deleted == 3
        assert len(remaining(store, "ratelimit:")) == 4

    def test_empty_partitions_complete_immediately(self, store, now, clock, config):
        result = sweep_step(store, default_partitions(config), None, 0, TimeBudget(1000, clock), now=now)

        assert result.completed is True
        assert result.count == 0
        assert result.cursor is None

    def test_default_partition_ages(self):
        partitions = default_partitions(MaintenanceConfig())

        assert [p.prefix for p in partitions] == ["ratelimit:", "botdetect:", "captcha:"]
        assert [p.max_age for p in partitions] == [DAY, 7 * DAY, HOUR]

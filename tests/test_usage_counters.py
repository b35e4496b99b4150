"""Tests for the fixed-window usage counters and their sweep."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from toolgate.service.usage import (
    DAY,
    MINUTE,
    UsageCounters,
    bucket_label,
    parse_bucket_label,
)


START = datetime(2024, 5, 17, 12, 0, 30)


class TestBucketLabels:
    def test_minute_label_truncates_seconds(self):
        assert bucket_label(MINUTE, START) == "2024-05-17-12-00"
        assert bucket_label(MINUTE, START + timedelta(seconds=29)) == "2024-05-17-12-00"
        assert bucket_label(MINUTE, START + timedelta(seconds=30)) == "2024-05-17-12-01"

    def test_day_label(self):
        assert bucket_label(DAY, START) == "2024-05-17"
        assert bucket_label(DAY, datetime(2024, 5, 17, 23, 59, 59)) == "2024-05-17"
        assert bucket_label(DAY, datetime(2024, 5, 18, 0, 0)) == "2024-05-18"

    def test_unknown_period_rejected(self):
        with pytest.raises(ValueError):
            bucket_label("hour", START)

    def test_minute_label_parses_back(self):
        label = bucket_label(MINUTE, START)
        assert parse_bucket_label(MINUTE, label) == datetime(2024, 5, 17, 12, 0)


class TestCheckAndRecord:
    def test_three_per_minute(self):
        """Calls 1-3 pass their check; the 4th check reports 3/3."""
        counters = UsageCounters(clock=lambda: START)

        for _ in range(3):
            assert counters.check("u1", "search", MINUTE, 3).allowed is True
            counters.record("u1", "search")

        status = counters.check("u1", "search", MINUTE, 3)
        assert status.allowed is False
        assert status.count == 3
        assert status.limit == 3
        assert status.period == MINUTE
        assert status.reason == "Rate limit exceeded: 3/3 calls per minute"

    def test_minute_boundary_resets_minute_only(self):
        counters = UsageCounters(clock=lambda: START)
        for _ in range(3):
            counters.record("u1", "search")

        later = START + timedelta(minutes=1)
        assert counters.current_count("u1", "search", MINUTE, now=later) == 0
        assert counters.current_count("u1", "search", DAY, now=later) == 3
        assert counters.check("u1", "search", MINUTE, 3, now=later).allowed is True

    def test_zero_limit_blocks(self):
        counters = UsageCounters(clock=lambda: START)
        status = counters.check("u1", "search", DAY, 0)
        assert status.allowed is False
        assert "0/0" in status.reason

    def test_check_does_not_create_entries(self):
        counters = UsageCounters(clock=lambda: START)
        counters.check("u1", "search", MINUTE, 5)
        assert counters.tracked_keys() == []

    def test_pairs_are_independent(self):
        counters = UsageCounters(clock=lambda: START)
        counters.record("u1", "search")
        counters.record("u1", "search")
        counters.record("u2", "search")
        counters.record("u1", "weather")

        assert counters.current_count("u1", "search", MINUTE) == 2
        assert counters.current_count("u2", "search", MINUTE) == 1
        assert counters.current_count("u1", "weather", DAY) == 1

    def test_concurrent_records_are_not_lost(self):
        counters = UsageCounters(clock=lambda: START)
        workers = 16
        per_worker = 250
        barrier = threading.Barrier(workers)

        def hammer():
            barrier.wait()
            for _ in range(per_worker):
                counters.record("u1", "search")

        threads = [threading.Thread(target=hammer) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        expected = workers * per_worker
        assert counters.current_count("u1", "search", MINUTE) == expected
        assert counters.current_count("u1", "search", DAY) == expected


class TestSweep:
    def test_sweep_after_eleven_minutes(self):
        """Minute 0 is dropped; minute 10 and the current minute survive."""
        start = datetime(2024, 5, 17, 12, 0)
        counters = UsageCounters(clock=lambda: start)
        for minute in range(12):
            counters.record("u1", "search", now=start + timedelta(minutes=minute))

        now = start + timedelta(minutes=11)
        counters.sweep(now=now)
        labels = counters.buckets("u1", "search", MINUTE)

        assert bucket_label(MINUTE, start) not in labels
        assert bucket_label(MINUTE, start + timedelta(minutes=10)) in labels
        assert bucket_label(MINUTE, now) in labels

    def test_sweep_with_timezone_aware_clock(self):
        start = datetime(2024, 5, 17, 12, 0, tzinfo=timezone.utc)
        counters = UsageCounters(clock=lambda: start)
        counters.record("u1", "search")
        counters.record("u1", "search", now=start + timedelta(minutes=11))

        removed = counters.sweep(now=start + timedelta(minutes=11))

        assert removed == 1
        assert list(counters.buckets("u1", "search", MINUTE)) == ["2024-05-17-12-11"]
        assert counters.buckets("u1", "search", DAY) == {"2024-05-17": 2}

    def test_sweep_keeps_current_bucket(self):
        counters = UsageCounters(clock=lambda: START)
        counters.record("u1", "search")

        assert counters.sweep() == 0
        assert counters.current_count("u1", "search", MINUTE) == 1
        assert counters.current_count("u1", "search", DAY) == 1

    def test_sweep_drops_previous_days(self):
        counters = UsageCounters(clock=lambda: START)
        counters.record("u1", "search", now=START - timedelta(days=1))
        counters.record("u1", "search")

        counters.sweep()

        assert counters.buckets("u1", "search", DAY) == {bucket_label(DAY, START): 1}

    def test_sweep_drops_empty_keys(self):
        counters = UsageCounters(clock=lambda: START)
        counters.record("u1", "search", now=START - timedelta(days=2))

        counters.sweep()

        assert counters.tracked_keys() == []
        # Recording after the key was dropped starts a fresh entry
        counters.record("u1", "search")
        assert counters.current_count("u1", "search", MINUTE) == 1

    def test_sweep_respects_retention_setting(self):
        counters = UsageCounters(minute_retention=2, clock=lambda: START)
        counters.record("u1", "search", now=START - timedelta(minutes=3))
        counters.record("u1", "search", now=START - timedelta(minutes=1))

        counters.sweep()

        labels = counters.buckets("u1", "search", MINUTE)
        assert bucket_label(MINUTE, START - timedelta(minutes=3)) not in labels
        assert bucket_label(MINUTE, START - timedelta(minutes=1)) in labels

    def test_sweep_concurrent_with_records(self):
        counters = UsageCounters(clock=lambda: START)
        stop = threading.Event()
        recorded = []

        def record():
            n = 0
            while not stop.is_set() and n < 2000:
                counters.record("u1", "search")
                n += 1
            recorded.append(n)

        def sweep():
            while not stop.is_set():
                counters.sweep()

        sweeper = threading.Thread(target=sweep)
        writer = threading.Thread(target=record)
        sweeper.start()
        writer.start()
        writer.join()
        stop.set()
        sweeper.join()

        assert counters.current_count("u1", "search", MINUTE) == recorded[0]

"""
Property-based tests for sync engine helpers.

Tests universal properties of:
- outcome classification
- report date windows
- watermark folding
- identifier sanitizing and row normalization
- retry delays and schedule arithmetic
"""

import re
from datetime import date, datetime, timedelta
from functools import reduce

from hypothesis import given, settings, strategies as st

from dra.sync.connectors.api.oauth import compute_date_range
from dra.sync.connectors.base import SyncOptions, encode_watermark, max_watermark
from dra.sync.history.sync_history import classify_outcome
from dra.sync.models import SyncSchedule, SyncStatus
from dra.sync.scheduler.refresh_scheduler import next_run_after
from dra.sync.store.unified_store import normalize_rows, sanitize_identifier
from dra.utils.retry import RetryConfig, RetryStrategy, calculate_delay

IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

days = st.dates(min_value=date(2015, 1, 1), max_value=date(2035, 12, 31))


class TestOutcomeProperties:
    """Terminal status classification."""

    @given(st.integers(min_value=0, max_value=10 ** 6), st.integers(min_value=0, max_value=10 ** 6),
           st.none() | st.text(min_size=1, max_size=20))
    def test_classification(self, synced, failed, error):
        """COMPLETED iff nothing went wrong; PARTIAL iff something went wrong after rows were written."""
        status = classify_outcome(synced, failed, error)

        if not error and failed == 0:
            assert status == SyncStatus.COMPLETED
        elif synced > 0:
            assert status == SyncStatus.PARTIAL
        else:
            assert status == SyncStatus.FAILED


class TestDateRangeProperties:
    """Report windows only cover complete days."""

    @given(days, st.integers(min_value=1, max_value=400))
    def test_full_window(self, today, lookback):
        start, end, incremental = compute_date_range({}, SyncOptions(), "report", lookback, today=today)

        assert end == today - timedelta(days=1)
        assert incremental is False
        assert start is not None
        assert (end - start).days + 1 == lookback

    @given(days, days, st.integers(min_value=0, max_value=30))
    def test_incremental_window(self, today, watermark, restate_days):
        options = SyncOptions(incremental=True, watermarks={"report": encode_watermark(watermark)})

        start, end, incremental = compute_date_range({"restate_days": restate_days}, options, "report", 30,
                                                     today=today)

        assert incremental is True
        assert end < today
        expected_start = watermark + timedelta(days=1 - restate_days)
        if expected_start > end:
            assert start is None
        else:
            assert start == expected_start
            assert start <= end


class TestWatermarkProperties:
    """Watermarks only move forward."""

    @given(st.lists(st.none() | st.integers(min_value=-10 ** 9, max_value=10 ** 9), max_size=30))
    def test_fold_equals_max(self, candidates):
        folded = reduce(max_watermark, candidates, None)

        present = [c for c in candidates if c is not None]
        assert folded == (max(present) if present else None)

    @given(st.lists(st.datetimes(min_value=datetime(2000, 1, 1), max_value=datetime(2100, 1, 1)), min_size=1,
                    max_size=20))
    def test_datetime_fold(self, candidates):
        assert reduce(max_watermark, candidates, None) == max(candidates)


class TestIdentifierProperties:
    """Identifiers are safe for every store dialect."""

    @given(st.text(max_size=200))
    @settings(max_examples=300)
    def test_sanitized_identifier_shape(self, name):
        assert IDENTIFIER.match(sanitize_identifier(name))

    @given(st.lists(st.dictionaries(st.text(max_size=80), st.integers(), max_size=8), min_size=1, max_size=10))
    @settings(max_examples=200)
    def test_normalized_rows_are_uniform(self, rows):
        columns, normalized = normalize_rows(rows)

        assert len(columns) == len(set(columns))
        assert len(normalized) == len(rows)
        for row in normalized:
            assert list(row.keys()) == columns
        for column in columns:
            assert IDENTIFIER.match(column)
        total_values = sum(len(row) for row in rows)
        assert sum(v is not None for row in normalized for v in row.values()) == total_values


class TestScheduleProperties:
    """Retry delays and schedule periods."""

    @given(st.floats(min_value=0.0, max_value=100.0), st.floats(min_value=0.0, max_value=600.0),
           st.integers(min_value=0, max_value=40), st.sampled_from(list(RetryStrategy)), st.booleans())
    def test_delay_is_bounded(self, base_delay, max_delay, attempt, strategy, jitter):
        config = RetryConfig(base_delay=base_delay, max_delay=max_delay, strategy=strategy, jitter=jitter)

        assert 0.0 <= calculate_delay(config, attempt) <= max_delay

    @given(st.datetimes(min_value=datetime(2000, 1, 1), max_value=datetime(2090, 1, 1)),
           st.sampled_from([s for s in SyncSchedule if s != SyncSchedule.MANUAL]))
    def test_next_run_is_strictly_later(self, previous, schedule):
        following = next_run_after(schedule, previous)

        assert following > previous
        assert following - previous <= timedelta(days=31)

    @given(st.datetimes(min_value=datetime(2000, 1, 1), max_value=datetime(2090, 1, 1)))
    def test_manual_schedule_never_runs(self, previous):
        assert next_run_after(SyncSchedule.MANUAL, previous) is None

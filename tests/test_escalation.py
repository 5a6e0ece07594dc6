"""
Unit tests for repeated-failure escalation.
"""

from datetime import timedelta

import pytest

from warden.config import EscalationPolicy
from warden.escalation import FailureTracker


@pytest.fixture
def tracker(clock):
    return FailureTracker(EscalationPolicy(count=5, window_ms=15 * 60 * 1000), clock)


class TestFailureTracker:
    """Threshold, sliding window and suppression."""

    def test_trips_once_at_threshold(self, tracker, clock):
        results = []
        for _ in range(6):
            results.append(tracker.record_failure("1.2.3.4"))
            clock.advance(timedelta(minutes=1))
        assert results == [None, None, None, None, 5, None]

    def test_old_failures_slide_out(self, tracker, clock):
        for _ in range(4):
            tracker.record_failure("a")
        clock.advance(timedelta(minutes=16))
        assert tracker.record_failure("a") is None
        assert tracker.failures("a") == 1

    def test_counts_again_after_suppression(self, tracker, clock):
        for _ in range(5):
            tracker.record_failure("a")
        clock.advance(timedelta(minutes=15))
        results = [tracker.record_failure("a") for _ in range(5)]
        assert results[-1] == 5

    def test_identifiers_are_independent(self, tracker):
        for _ in range(4):
            tracker.record_failure("a")
        assert tracker.record_failure("b") is None
        assert tracker.record_failure("a") == 5

    def test_clear(self, tracker):
        for _ in range(4):
            tracker.record_failure("a")
        tracker.clear("a")
        assert tracker.failures("a") == 0

    def test_purge_idle(self, tracker, clock):
        tracker.record_failure("a")
        for _ in range(5):
            tracker.record_failure("b")

        clock.advance(timedelta(minutes=10))
        assert tracker.purge_idle() == 0

        clock.advance(timedelta(minutes=6))
        assert tracker.purge_idle() == 2

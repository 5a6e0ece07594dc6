"""
Unit tests for fixed-window rate limiting.
"""

import threading
from datetime import timedelta

import pytest

from warden.config import RateLimitRule
from warden.errors import RateLimited
from warden.rate_limiter import RateLimiter


@pytest.fixture
def limiter(clock):
    rules = {
        "default": RateLimitRule(window_ms=60000, max_requests=5),
        "login": RateLimitRule(window_ms=15 * 60000, max_requests=2),
    }
    return RateLimiter(rules, clock)


class TestFixedWindow:
    """Counting within and across windows."""

    def test_quota_then_new_window(self, limiter, clock):
        """Five allowed with remaining 4..0, sixth denied, allowed again after the window."""
        remaining = [limiter.check("1.2.3.4", "files.list").remaining for _ in range(5)]
        assert remaining == [4, 3, 2, 1, 0]

        denied = limiter.check("1.2.3.4", "files.list")
        assert not denied.allowed
        assert denied.remaining == 0

        clock.advance(timedelta(milliseconds=61000))
        decision = limiter.check("1.2.3.4", "files.list")
        assert decision.allowed
        assert decision.remaining == 4

    def test_denied_checks_do_not_move_window(self, limiter, clock):
        """Denials keep remaining and reset_at unchanged."""
        first = limiter.check("a", "login")
        limiter.check("a", "login")

        clock.advance(timedelta(minutes=5))
        denials = [limiter.check("a", "login") for _ in range(3)]

        assert all(not d.allowed for d in denials)
        assert {d.reset_at for d in denials} == {first.reset_at}
        assert {d.remaining for d in denials} == {0}

    def test_window_boundary_is_exclusive(self, limiter, clock):
        """A check exactly at window_end opens a new window."""
        first = limiter.check("a", "login")
        limiter.check("a", "login")
        clock.set(first.reset_at)
        assert limiter.check("a", "login").allowed

    def test_unknown_endpoint_uses_default(self, limiter):
        decision = limiter.check("a", "something.else")
        assert decision.limit == 5

    def test_keys_are_independent(self, limiter):
        """Identifiers and endpoints each get their own counter."""
        for _ in range(2):
            limiter.check("a", "login")
        assert not limiter.check("a", "login").allowed
        assert limiter.check("b", "login").allowed
        assert limiter.check("a", "files.list").allowed

    def test_enforce_raises_with_decision(self, limiter):
        limiter.enforce("a", "login")
        limiter.enforce("a", "login")
        with pytest.raises(RateLimited) as exc_info:
            limiter.enforce("a", "login")
        assert exc_info.value.decision.remaining == 0

    def test_peek_does_not_count(self, limiter):
        assert limiter.peek("a", "login").remaining == 2
        limiter.check("a", "login")
        assert limiter.peek("a", "login").remaining == 1
        assert limiter.peek("a", "login").remaining == 1

    def test_reset(self, limiter):
        limiter.check("a", "login")
        limiter.check("a", "files.list")
        limiter.check("b", "login")
        assert limiter.reset("a", "login") == 1
        assert limiter.reset("a") == 1
        assert len(limiter) == 1

    def test_rules_require_default(self, clock):
        with pytest.raises(ValueError):
            RateLimiter({"login": RateLimitRule(window_ms=1000, max_requests=1)}, clock)


class TestPurge:
    """Reclamation of elapsed windows."""

    def test_purge_keeps_grace_period(self, limiter, clock):
        limiter.check("a", "files.list")
        limiter.check("b", "login")

        # files.list ended a minute ago, inside its two-window grace
        clock.advance(timedelta(minutes=2))
        assert limiter.purge_expired() == 0

        clock.advance(timedelta(minutes=1))
        assert limiter.purge_expired() == 1
        assert len(limiter) == 1

    def test_purged_key_starts_fresh(self, limiter, clock):
        for _ in range(3):
            limiter.check("a", "login")
        clock.advance(timedelta(hours=1))
        limiter.purge_expired()
        assert limiter.check("a", "login").remaining == 1


class TestConcurrency:
    """Shard locking under parallel checks."""

    def test_parallel_checks_never_exceed_quota(self, clock):
        limiter = RateLimiter({"default": RateLimitRule(window_ms=60000, max_requests=50)}, clock)
        allowed = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                decision = limiter.check("shared", "files.list")
                if decision.allowed:
                    with lock:
                        allowed.append(decision.remaining)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(allowed) == 50
        assert sorted(allowed) == list(range(50))

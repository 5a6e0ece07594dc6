"""
Fixed-window rate limiting.

One counter per (identifier, endpoint) pair. A window opens on the first
request, admits up to ``max_requests`` and resets once its end has passed.
Worst case across a window boundary is twice the quota, which is fine for
abuse deterrence.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Mapping, Optional, Tuple

from loguru import logger

from .clock import Clock, SystemClock
from .config import RateLimitRule
from .errors import RateLimited
from .locking import LockTable

WindowKey = Tuple[str, str]


@dataclass
class RateLimitWindow:
    """Counter state for one key. Only touched under its shard lock."""
    count: int
    window_start: datetime
    window_end: datetime
    duration: timedelta


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Result of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Requests left in the current window
        reset_at: When the current window ends
        limit: Configured max_requests for the endpoint
    """
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int


class RateLimiter:
    """
    Per-(identifier, endpoint) fixed-window limiter.

    Windows live in a striped LockTable; each check holds exactly one shard
    lock while it reads, decides and increments.
    """

    def __init__(
        self,
        rules: Mapping[str, RateLimitRule],
        clock: Optional[Clock] = None,
        grace_windows: int = 2,
        shards: int = 64,
    ):
        """
        Initialize limiter.

        Args:
            rules: Endpoint name -> rule; must contain "default"
            clock: Time source
            grace_windows: Extra window durations an elapsed window is kept
            shards: Number of lock stripes
        """
        if "default" not in rules:
            raise ValueError("Rate limit rules must include a 'default' entry")
        self.rules: Dict[str, RateLimitRule] = dict(rules)
        self.clock = clock or SystemClock()
        self.grace_windows = grace_windows
        self._table: LockTable[RateLimitWindow] = LockTable(shards)

    def rule_for(self, endpoint: str) -> RateLimitRule:
        return self.rules.get(endpoint, self.rules["default"])

    def check(self, identifier: str, endpoint: str) -> RateLimitDecision:
        """
        Count a request and decide whether it is allowed.

        Denied checks leave the window untouched.

        Args:
            identifier: Network origin or principal id
            endpoint: Endpoint name used to pick the rule

        Returns:
            RateLimitDecision
        """
        rule = self.rule_for(endpoint)
        key: WindowKey = (identifier, endpoint)
        shard = self._table.shard_for(key)

        with shard.lock:
            now = self.clock.now()
            window = shard.entries.get(key)

            if window is None or now >= window.window_end:
                window = RateLimitWindow(
                    count=1,
                    window_start=now,
                    window_end=now + rule.window,
                    duration=rule.window,
                )
                shard.entries[key] = window
                return RateLimitDecision(True, rule.max_requests - 1, window.window_end, rule.max_requests)

            if window.count >= rule.max_requests:
                decision = RateLimitDecision(False, 0, window.window_end, rule.max_requests)
            else:
                window.count += 1
                decision = RateLimitDecision(
                    True, rule.max_requests - window.count, window.window_end, rule.max_requests
                )

        if not decision.allowed:
            logger.warning(f"Rate limit exceeded for {identifier} on {endpoint}")
        return decision

    def enforce(self, identifier: str, endpoint: str) -> RateLimitDecision:
        """
        Like check(), but raise on denial.

        Raises:
            RateLimited: If the quota is exhausted
        """
        decision = self.check(identifier, endpoint)
        if not decision.allowed:
            raise RateLimited(decision)
        return decision

    def peek(self, identifier: str, endpoint: str) -> RateLimitDecision:
        """Report the current quota without counting a request."""
        rule = self.rule_for(endpoint)
        key: WindowKey = (identifier, endpoint)
        shard = self._table.shard_for(key)

        with shard.lock:
            now = self.clock.now()
            window = shard.entries.get(key)
            if window is None or now >= window.window_end:
                return RateLimitDecision(True, rule.max_requests, now + rule.window, rule.max_requests)
            remaining = max(rule.max_requests - window.count, 0)
            return RateLimitDecision(remaining > 0, remaining, window.window_end, rule.max_requests)

    def reset(self, identifier: str, endpoint: Optional[str] = None) -> int:
        """
        Drop windows for an identifier (one endpoint, or all of them).

        Returns:
            Number of windows removed
        """
        if endpoint is not None:
            key = (identifier, endpoint)
            shard = self._table.shard_for(key)
            with shard.lock:
                return 1 if shard.entries.pop(key, None) is not None else 0

        removed = 0
        for shard in self._table.shards():
            with shard.lock:
                for key in [k for k in shard.entries if k[0] == identifier]:
                    del shard.entries[key]
                    removed += 1
        return removed

    # ========================================================================
    # Reclamation
    # ========================================================================

    def purge_expired(self) -> int:
        """
        Remove windows that ended more than ``grace_windows`` durations ago.

        Walks one shard at a time so live checks on other shards never wait.

        Returns:
            Number of windows removed
        """
        now = self.clock.now()
        removed = 0
        for shard in self._table.shards():
            with shard.lock:
                stale = [
                    key for key, window in shard.entries.items()
                    if now >= window.window_end + window.duration * self.grace_windows
                ]
                for key in stale:
                    del shard.entries[key]
                removed += len(stale)

        if removed:
            logger.debug(f"Purged {removed} expired rate limit windows")
        return removed

    def __len__(self) -> int:
        return len(self._table)

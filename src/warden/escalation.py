"""
Repeated-failure detection.

Counts authentication failures per identifier over a sliding interval and
trips once when the threshold is reached. After tripping, the identifier is
quiet for one full interval before failures count again.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Optional

from .clock import Clock, SystemClock
from .config import EscalationPolicy


@dataclass
class _FailureHistory:
    failures: Deque[datetime] = field(default_factory=deque)
    suppressed_until: Optional[datetime] = None


class FailureTracker:
    """
    Escalation trigger for repeated authentication failures.

    ``record_failure`` returns the failure count when this failure is the
    one that should escalate, and None otherwise.
    """

    def __init__(self, policy: EscalationPolicy, clock: Optional[Clock] = None):
        self.policy = policy
        self.clock = clock or SystemClock()
        self._histories: Dict[str, _FailureHistory] = {}
        self._lock = threading.Lock()

    def record_failure(self, identifier: str) -> Optional[int]:
        now = self.clock.now()
        window = self.policy.window

        with self._lock:
            history = self._histories.setdefault(identifier, _FailureHistory())

            if history.suppressed_until is not None:
                if now < history.suppressed_until:
                    return None
                history.suppressed_until = None

            history.failures.append(now)
            while history.failures and history.failures[0] <= now - window:
                history.failures.popleft()

            if len(history.failures) < self.policy.count:
                return None

            count = len(history.failures)
            history.failures.clear()
            history.suppressed_until = now + window
            return count

    def failures(self, identifier: str) -> int:
        """Failures currently counted toward the threshold."""
        with self._lock:
            history = self._histories.get(identifier)
            return len(history.failures) if history else 0

    def clear(self, identifier: str) -> None:
        with self._lock:
            self._histories.pop(identifier, None)

    def purge_idle(self) -> int:
        """
        Forget identifiers with no recent failures and no active suppression.

        Returns:
            Number of identifiers forgotten
        """
        now = self.clock.now()
        cutoff = now - self.policy.window
        with self._lock:
            idle = [
                ident for ident, history in self._histories.items()
                if (history.suppressed_until is None or now >= history.suppressed_until)
                and (not history.failures or history.failures[-1] <= cutoff)
            ]
            for ident in idle:
                del self._histories[ident]
        return len(idle)

"""
Operational error channel.

Out-of-band sink for failures that must not change an authentication
decision: audit and incident writes that could not be persisted.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from loguru import logger

from .clock import Clock, SystemClock


@dataclass(frozen=True)
class OperationalEvent:
    """A structured failure report."""
    event: str
    message: str
    timestamp: datetime
    fields: Dict[str, Any] = field(default_factory=dict)


class OperationalErrorChannel:
    """
    Collects operational failures.

    Every event is logged through loguru with its fields bound, kept in a
    bounded ring for inspection, and forwarded to subscribed sinks.
    """

    def __init__(self, clock: Optional[Clock] = None, capacity: int = 1000):
        self.clock = clock or SystemClock()
        self._events: Deque[OperationalEvent] = deque(maxlen=capacity)
        self._sinks: List[Callable[[OperationalEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, sink: Callable[[OperationalEvent], None]) -> None:
        with self._lock:
            self._sinks.append(sink)

    def report(self, event: str, error: Optional[BaseException] = None, **fields: Any) -> OperationalEvent:
        """
        Report an operational failure.

        Args:
            event: Short machine-readable event name, e.g. "audit_write_failed"
            error: Exception that caused the failure, if any
            **fields: Extra structured context

        Returns:
            The recorded OperationalEvent
        """
        message = str(error) if error is not None else event
        record = OperationalEvent(
            event=event,
            message=message,
            timestamp=self.clock.now(),
            fields=dict(fields),
        )
        logger.bind(channel="ops", event=event, **fields).error(f"{event}: {message}")

        with self._lock:
            self._events.append(record)
            sinks = list(self._sinks)

        for sink in sinks:
            try:
                sink(record)
            except Exception as e:
                logger.opt(exception=e).warning(f"Operational sink failed for {event}")

        return record

    def recent(self, event: Optional[str] = None) -> List[OperationalEvent]:
        """Events still in the ring, oldest first, optionally filtered by name."""
        with self._lock:
            events = list(self._events)
        if event is None:
            return events
        return [e for e in events if e.event == event]

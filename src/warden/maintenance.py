"""
Periodic background maintenance.

Runs housekeeping callables (rate limit purge, session cache eviction) on a
daemon thread, independently of request handling.
"""

import threading
from typing import Callable, Dict, Optional

from loguru import logger


class MaintenanceTimer:
    """
    Fixed-interval runner for housekeeping tasks.

    A failing task is logged and the loop continues.
    """

    def __init__(self, interval_seconds: float, tasks: Dict[str, Callable[[], int]]):
        """
        Initialize timer.

        Args:
            interval_seconds: Seconds between runs
            tasks: Name -> callable returning the number of items reclaimed
        """
        self.interval_seconds = interval_seconds
        self.tasks = dict(tasks)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Dict[str, int]:
        results: Dict[str, int] = {}
        for name, task in self.tasks.items():
            try:
                results[name] = task()
            except Exception as e:
                logger.opt(exception=e).error(f"Maintenance task {name} failed")
        return results

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="warden-maintenance", daemon=True)
        self._thread.start()
        logger.info(f"Maintenance timer started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            results = self.run_once()
            reclaimed = sum(results.values())
            if reclaimed:
                logger.debug(f"Maintenance reclaimed {reclaimed} entries: {results}")

"""Background maintenance loop.

Calls ``Brain.run_maintenance`` on a fixed cadence from a daemon thread.
It never blocks a live decision: each component takes its own short lock.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Callable, Optional

from kairu_brain.orchestrator.brain import Brain

logger = logging.getLogger("brain.orchestrator.maintenance")


class MaintenanceRunner:
    """Periodic decay, expiry and window checks until stopped."""

    def __init__(
        self,
        brain: Brain,
        interval_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.brain = brain
        self.interval = interval_seconds or brain.config.maintenance.interval_seconds
        self.clock = clock
        self.stop_event = threading.Event()
        self.runs = 0
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Optional[dict[str, int]]:
        """One maintenance pass. Errors are logged, never raised."""
        try:
            summary = self.brain.run_maintenance(self.clock())
        except Exception:
            logger.exception("Maintenance pass failed")
            return None
        self.runs += 1
        return summary

    def _loop(self) -> None:
        logger.info("Maintenance started (every %.0fs)", self.interval)
        while not self.stop_event.is_set():
            self.run_once()
            self.stop_event.wait(self.interval)
        logger.info("Maintenance stopped after %d run(s)", self.runs)

    def start(self) -> None:
        if self.running:
            return
        self.stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="brain-maintenance", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

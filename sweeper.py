"""
Background release of expired stock reservations.

A daemon thread calls ReservationEngine.cleanup_expired every interval. A
failed sweep is logged and retried on the next tick.
"""

import logging
import threading
from typing import Optional

import config
from reservations import ReservationEngine

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    def __init__(self, engine: ReservationEngine, interval_seconds: float = config.SWEEP_INTERVAL_SECONDS):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="reservation-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Reservation sweeper started (every {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Reservation sweeper stopped")

    def run_once(self) -> Optional[dict]:
        """One sweep. Returns the cleanup counts, or None if the sweep failed."""
        try:
            return self.engine.cleanup_expired()
        except Exception:
            logger.exception("Reservation sweep failed; retrying next interval")
            return None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)

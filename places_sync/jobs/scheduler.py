"""Weekly trigger for scheduled Google Places syncs."""

import logging
import threading
from typing import Callable, Optional

import schedule

from places_sync.core.config import parse_schedule

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs ``job`` on a fixed weekly slot from a background thread."""

    def __init__(self, job: Callable[[], object], expression: str = "sunday 02:00", poll_seconds: float = 60.0):
        self.expression = expression
        self.poll_seconds = poll_seconds
        self._scheduler = schedule.Scheduler()
        weekday, at = parse_schedule(expression)
        self.job = getattr(self._scheduler.every(), weekday).at(at).do(job)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def next_run(self):
        return self.job.next_run

    def run_pending(self) -> None:
        self._scheduler.run_pending()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Sync scheduler already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="places-sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Google Places sync scheduled (%s), next run at %s", self.expression, self.next_run)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Sync scheduler stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_pending()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Scheduled job raised: %s", exc)
            self._stop.wait(self.poll_seconds)

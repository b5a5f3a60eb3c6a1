"""Inter-call pacing for the Google Places API."""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RateGovernor:
    """Keeps a minimum delay between outbound calls and cools down after a 429.

    There is no token bucket and no per-endpoint state: the only thing remembered
    between calls is when the previous one was released.
    """

    def __init__(
        self,
        min_delay: float = 0.1,
        cooldown_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_delay = min_delay
        self.cooldown_seconds = cooldown_seconds
        self._sleep = sleep
        self._clock = clock
        self._last_call: Optional[float] = None

    def wait(self) -> None:
        """Block until ``min_delay`` has elapsed since the previous call."""
        now = self._clock()
        if self._last_call is not None:
            remaining = self.min_delay - (now - self._last_call)
            if remaining > 0:
                self._sleep(remaining)
                now = self._clock()
        self._last_call = now

    def cooldown(self) -> None:
        """Back off after a rate-limit response before the caller proceeds."""
        logger.warning("Rate limited by Google Places; cooling down for %.1fs", self.cooldown_seconds)
        self._sleep(self.cooldown_seconds)
        self._last_call = self._clock()

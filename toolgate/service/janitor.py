"""Background sweeper that keeps the usage counter map bounded.

Runs ``UsageCounters.sweep()`` on a fixed interval in a daemon thread,
independent of any request. The sweep only holds the counter map lock long
enough to snapshot or drop keys, so permission checks are never stalled.
"""

from __future__ import annotations

import threading
from typing import Optional

from toolgate.logging import get_logger
from toolgate.service.usage import UsageCounters

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0
MAX_BACKOFF_SECONDS = 300.0


class CounterJanitor:
    """Periodically evicts stale minute/day buckets from ``UsageCounters``."""

    def __init__(
        self,
        counters: UsageCounters,
        *,
        interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.counters = counters
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the sweep thread."""
        if self.running:
            logger.warning("counter_janitor_already_running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="toolgate-counter-janitor", daemon=True
        )
        self._thread.start()
        logger.info("counter_janitor_started", interval=self.interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the sweep thread to exit and wait for it."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("counter_janitor_stop_timeout", timeout=timeout)
            self._thread = None
        logger.info("counter_janitor_stopped", sweeps=self.sweeps)

    def run_once(self) -> int:
        removed = self.counters.sweep()
        self.sweeps += 1
        return removed

    def _run_loop(self) -> None:
        consecutive_errors = 0
        wait = self.interval
        while not self._stop_event.wait(wait):
            try:
                self.run_once()
                consecutive_errors = 0
                wait = self.interval
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "counter_janitor_sweep_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    wait = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "counter_janitor_backoff",
                        backoff_seconds=wait,
                        consecutive_errors=consecutive_errors,
                    )

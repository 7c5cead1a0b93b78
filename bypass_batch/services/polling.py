"""
PollingWorker -- base class for the in-process polling loops.

Contract:
    Subclasses implement ``tick()`` (one pass, returns the number of items
    handled, never raises) and may override ``_wait_seconds()`` to shorten
    the sleep between passes.  ``start()`` / ``stop()`` run the loop on a
    daemon thread.

Invariants enforced:
    - Graceful shutdown: ``stop()`` wakes the loop immediately, and
      subclasses check ``_stopping`` between items.
"""

from __future__ import annotations

import threading

from bypass_kernel.logging_config import get_logger

logger = get_logger("batch.polling")


class PollingWorker:
    """Start/stop plumbing shared by the scheduler, recovery and sweeper loops.

    Non-goals:
        - NOT a distributed scheduler; cross-process exclusion comes from
          store leases where a loop needs it.
    """

    name = "polling-worker"

    def __init__(self, interval_seconds: float):
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self) -> int:
        raise NotImplementedError

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(
            "worker_started", extra={"worker": self.name, "interval": self._interval}
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current pass to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("worker_stopped", extra={"worker": self.name})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def _stopping(self) -> bool:
        return self._stop_event.is_set()

    def _wait_seconds(self) -> float:
        return self._interval

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("worker_tick_exception", extra={"worker": self.name})
            self._stop_event.wait(timeout=max(self._wait_seconds(), 0.0))

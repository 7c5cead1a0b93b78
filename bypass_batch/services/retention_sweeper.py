"""
RetentionSweeper -- deletes terminal workflows past the retention window.

Contract:
    Each ``tick()`` purges, in batches of ``batch_size``, every terminal
    workflow (and its audit rows) created before ``now - retention``.
    Pending workflows are never purged, however old.

Audit relevance:
    This is the only code path that removes audit rows.  It deletes
    whole workflows, never individual entries, and logs the count.
"""

from __future__ import annotations

from datetime import timedelta

from bypass_kernel.domain.clock import Clock, SystemClock
from bypass_kernel.logging_config import get_logger
from bypass_kernel.services.workflow_store import WorkflowStore

from bypass_batch.services.polling import PollingWorker

logger = get_logger("batch.retention_sweeper")


class RetentionSweeper(PollingWorker):
    name = "retention-sweeper"

    def __init__(
        self,
        store: WorkflowStore,
        retention: timedelta,
        clock: Clock | None = None,
        interval_seconds: float = 86400.0,
        batch_size: int = 500,
    ):
        super().__init__(interval_seconds)
        self._store = store
        self._retention = retention
        self._clock = clock or SystemClock()
        self._batch_size = batch_size

    def tick(self) -> int:
        """Purge expired workflows; returns how many were deleted."""
        try:
            cutoff = self._clock.now_utc() - self._retention
            purged = 0
            while not self._stopping:
                count = self._store.purge_completed_before(cutoff, self._batch_size)
                purged += count
                if count < self._batch_size:
                    break
            if purged:
                logger.info(
                    "retention_sweep_completed",
                    extra={"purged": purged, "cutoff": cutoff.isoformat()},
                )
            return purged
        except Exception:
            logger.exception("retention_sweep_failed")
            return 0

"""
DeliveryRecovery -- resends notification records that were never delivered.

Contract:
    Each ``tick()`` scans workflows with undelivered notification records
    and re-offers to the dispatcher every record that is either
    - unattempted and older than ``stale_after`` (lost from the queue,
      dropped on overflow, or never enqueued after a crash), or
    - failed with a scheduled retry whose ``next_attempt_at`` has passed.

Architecture: bypass_batch/services.  Reads through the WorkflowStore;
    writes only through the dispatcher (which records outcomes through
    the coordinator).

Invariants enforced:
    - Abandoned records (attempted, no retry scheduled) are never resent.
    - Delivered records are never resent.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from bypass_kernel.domain.approval import NotificationRecord
from bypass_kernel.domain.clock import Clock, SystemClock
from bypass_kernel.logging_config import get_logger
from bypass_kernel.services.coordinator import NotificationOutbox
from bypass_kernel.services.workflow_store import WorkflowStore

from bypass_batch.services.polling import PollingWorker

logger = get_logger("batch.delivery_recovery")


def is_resend_due(record: NotificationRecord, now: datetime, stale_after: timedelta) -> bool:
    if record.delivered:
        return False
    if record.attempts == 0:
        return record.sent_at <= now - stale_after
    return record.next_attempt_at is not None and record.next_attempt_at <= now


class DeliveryRecovery(PollingWorker):
    """Periodic resend of undelivered notifications."""

    name = "delivery-recovery"

    def __init__(
        self,
        store: WorkflowStore,
        outbox: NotificationOutbox,
        clock: Clock | None = None,
        interval_seconds: float = 30.0,
        stale_after: timedelta = timedelta(seconds=30),
        batch_size: int = 100,
    ):
        super().__init__(interval_seconds)
        self._store = store
        self._outbox = outbox
        self._clock = clock or SystemClock()
        self._stale_after = stale_after
        self._batch_size = batch_size

    def tick(self) -> int:
        """Re-offer due records; returns how many were accepted by the outbox."""
        try:
            return self._recover()
        except Exception:
            logger.exception("delivery_recovery_tick_failed")
            return 0

    def _recover(self) -> int:
        now = self._clock.now_utc()
        resent = 0
        for workflow in self._store.list_undelivered(self._batch_size):
            if self._stopping:
                break
            due = tuple(
                r
                for r in workflow.notifications
                if is_resend_due(r, now, self._stale_after)
            )
            if due:
                resent += self._outbox.offer(workflow, due)
        if resent:
            logger.info("notifications_resent", extra={"count": resent})
        return resent

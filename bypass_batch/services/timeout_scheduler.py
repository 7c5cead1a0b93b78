"""
TimeoutScheduler -- acts on elapsed approval deadlines and sends reminders.

Contract:
    Each ``tick()`` claims pending workflows whose ``timeout_at`` has
    passed (under a lease, so concurrent schedulers never double-fire),
    asks the coordinator to expire each one (which escalates when the
    escalation chain allows, else applies the final action), then sends
    due reminders for workflows approaching their deadline.

Architecture: bypass_batch/services.  Uses bypass_batch.domain.reminders
    for pure evaluation and the kernel coordinator for every mutation.

Invariants enforced:
    - All timestamps from the injected Clock.
    - Expiry passes run before reminder passes, so a workflow is never
      reminded about a deadline that already elapsed.
    - The deadline token passed to ``expire`` is the snapshot's
      ``timeout_at``; a concurrent response or escalation makes it stale
      and the coordinator turns the call into a no-op.
    - Respects the stop signal between items.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

from bypass_kernel.domain.clock import Clock, SystemClock, TimerRegistry
from bypass_kernel.exceptions import BypassEngineError
from bypass_kernel.logging_config import get_logger
from bypass_kernel.services.coordinator import WorkflowCoordinator
from bypass_kernel.services.workflow_store import WorkflowStore

from bypass_batch.domain.reminders import next_reminder_number
from bypass_batch.services.polling import PollingWorker

logger = get_logger("batch.timeout_scheduler")


class TimeoutScheduler(PollingWorker):
    """In-process deadline scheduler.

    Contract:
        - ``tick()`` runs one expiry pass and one reminder pass and returns
          the number of workflows acted on.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - The timer registry only shortens sleeps; the store's
          ``timeout_at`` column is the source of truth, so deadlines
          survive restarts.
    """

    name = "timeout-scheduler"

    def __init__(
        self,
        store: WorkflowStore,
        coordinator: WorkflowCoordinator,
        clock: Clock | None = None,
        owner: str | None = None,
        poll_interval_seconds: float = 15.0,
        batch_size: int = 100,
        lease_ttl: timedelta = timedelta(seconds=30),
        reminder_interval: timedelta = timedelta(minutes=15),
        max_reminders: int = 3,
        timers: TimerRegistry | None = None,
    ):
        super().__init__(poll_interval_seconds)
        self._store = store
        self._coordinator = coordinator
        self._clock = clock or SystemClock()
        self._owner = owner or f"scheduler-{uuid4().hex[:12]}"
        self._batch_size = batch_size
        self._lease_ttl = lease_ttl
        self._reminder_interval = reminder_interval
        self._max_reminders = max_reminders
        self._timers = timers

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Run one expiry pass and one reminder pass (public for testing).

        Returns the number of workflows expired, escalated or reminded.
        """
        try:
            handled = self._expire_due()
            if not self._stopping:
                handled += self._send_reminders()
            return handled
        except Exception:
            logger.exception("scheduler_tick_failed", extra={"owner": self._owner})
            return 0

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _wait_seconds(self) -> float:
        """Sleep until the next known deadline, capped by the poll interval."""
        if self._timers is None:
            return self._interval
        deadline = self._timers.next_deadline()
        if deadline is None:
            return self._interval
        until = (deadline - self._clock.now_utc()).total_seconds()
        return min(self._interval, max(until, 0.0))

    def _expire_due(self) -> int:
        now = self._clock.now_utc()
        if self._timers is not None:
            # Registry entries are hints; the claim below is authoritative
            self._timers.due(now)

        claimed = self._store.claim_expired(
            now, self._owner, self._lease_ttl, self._batch_size
        )
        handled = 0
        for workflow in claimed:
            if self._stopping:
                self._store.release_claim(workflow.workflow_id, self._owner)
                continue
            try:
                result = self._coordinator.expire(
                    workflow.workflow_id, workflow.timing.timeout_at
                )
                if result is not None:
                    handled += 1
            except BypassEngineError as exc:
                logger.warning(
                    "deadline_action_skipped",
                    extra={
                        "workflow_id": workflow.workflow_id,
                        "error_code": exc.code,
                    },
                )
            except Exception:
                logger.exception(
                    "deadline_action_failed",
                    extra={"workflow_id": workflow.workflow_id},
                )
            finally:
                self._store.release_claim(workflow.workflow_id, self._owner)

        if claimed:
            logger.info(
                "deadline_pass_completed",
                extra={"claimed": len(claimed), "handled": handled, "owner": self._owner},
            )
        return handled

    def _send_reminders(self) -> int:
        now = self._clock.now_utc()
        candidates = self._store.list_by_deadline(
            now + self._reminder_interval, self._batch_size
        )
        sent = 0
        for workflow in candidates:
            if self._stopping:
                break
            n = next_reminder_number(
                workflow, now, self._reminder_interval, self._max_reminders
            )
            if n is None:
                continue
            try:
                self._coordinator.reminded(workflow.workflow_id, n)
                sent += 1
            except BypassEngineError as exc:
                # Lost a race with a response or another scheduler
                logger.info(
                    "reminder_skipped",
                    extra={
                        "workflow_id": workflow.workflow_id,
                        "reminder_number": n,
                        "error_code": exc.code,
                    },
                )
        return sent

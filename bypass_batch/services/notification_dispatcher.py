"""
NotificationDispatcher -- bounded outbox in front of the notification sinks.

Contract:
    ``offer(workflow, records)`` renders each ``NotificationRecord`` and
    enqueues it without blocking; a full queue drops the message (the
    record stays undelivered and ``DeliveryRecovery`` resends it).  A
    pool of worker threads sends messages through the sink of their
    channel, acknowledges the sink, and records the outcome on the
    workflow through ``record_delivery``.

Architecture: bypass_batch/services.  Implements the coordinator's
    ``NotificationOutbox`` protocol; reports back through the
    ``DeliveryRecorder`` protocol (the coordinator).

Invariants enforced:
    - A sink never sees more than its channel's ``max_concurrency``
      concurrent sends.
    - A message id is in flight at most once per process.
    - Failed sends are retried with capped exponential backoff until
      ``retry.max_attempts``; after that the record is abandoned
      (``next_attempt_at`` cleared).

Failure modes:
    - Sink exceptions are converted into a failed receipt.
    - A failure to record the outcome is logged; the record stays
      undelivered and is resent by recovery.
"""

from __future__ import annotations

import queue
import threading
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Protocol

from bypass_kernel.domain.approval import NotificationChannel, NotificationRecord, Workflow
from bypass_kernel.domain.clock import Clock, SystemClock
from bypass_kernel.domain.notifications import (
    DeliveryState,
    NotificationMessage,
    NotificationSink,
    Receipt,
    render_message,
)
from bypass_kernel.exceptions import BypassEngineError
from bypass_kernel.logging_config import get_logger
from bypass_kernel.services.coordinator import RetryPolicy

logger = get_logger("batch.notification_dispatcher")

_POLL_SECONDS = 0.2


class DeliveryRecorder(Protocol):
    def record_delivery(
        self,
        workflow_id: str,
        message_id: str,
        delivered: bool,
        opened: bool = False,
        provider_message_id: str | None = None,
        error: str | None = None,
        next_attempt_at: datetime | None = None,
    ) -> Workflow: ...


class NotificationDispatcher:
    """Queue plus worker pool delivering notification messages.

    Guarantees:
        - ``offer`` never blocks the committing thread.
        - ``drain_once`` delivers everything queued on the calling thread,
          which is how tests and single-threaded deployments use it.

    Non-goals:
        - Does NOT persist the queue; the workflow's notification records
          are the durable outbox.
    """

    def __init__(
        self,
        sinks: Mapping[NotificationChannel, NotificationSink],
        retry: RetryPolicy,
        clock: Clock | None = None,
        channel_limits: Mapping[NotificationChannel, int] | None = None,
        queue_max_depth: int = 1000,
        worker_count: int = 4,
        recorder: DeliveryRecorder | None = None,
    ):
        self._sinks = dict(sinks)
        self._retry = retry
        self._clock = clock or SystemClock()
        limits = channel_limits or {}
        self._limits = {
            channel: threading.BoundedSemaphore(max(limits.get(channel, 4), 1))
            for channel in self._sinks
        }
        self._queue: queue.Queue[NotificationMessage] = queue.Queue(maxsize=queue_max_depth)
        self._worker_count = worker_count
        self._recorder = recorder
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._workers: list[threading.Thread] = []

    def bind(self, recorder: DeliveryRecorder) -> None:
        """Attach the recorder once the coordinator exists."""
        self._recorder = recorder

    # -------------------------------------------------------------------------
    # Outbox
    # -------------------------------------------------------------------------

    def offer(self, workflow: Workflow, records: Iterable[NotificationRecord]) -> int:
        """Enqueue ``records`` of ``workflow``; returns how many were accepted."""
        accepted = 0
        for record in records:
            with self._in_flight_lock:
                if record.message_id in self._in_flight:
                    continue
                self._in_flight.add(record.message_id)
            message = render_message(workflow, record, attempt=record.attempts + 1)
            try:
                self._queue.put_nowait(message)
            except queue.Full:
                self._release(record.message_id)
                logger.warning(
                    "notification_queue_full",
                    extra={
                        "workflow_id": workflow.workflow_id,
                        "message_id": record.message_id,
                        "depth": self._queue.qsize(),
                    },
                )
                continue
            accepted += 1
        return accepted

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if any(t.is_alive() for t in self._workers):
            return
        self._stop_event.clear()
        self._workers = [
            threading.Thread(
                target=self._worker_loop, name=f"notification-worker-{i}", daemon=True
            )
            for i in range(self._worker_count)
        ]
        for worker in self._workers:
            worker.start()
        logger.info("dispatcher_started", extra={"worker_count": self._worker_count})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        for worker in self._workers:
            if worker.is_alive():
                worker.join(timeout=timeout)
        self._workers = []
        logger.info("dispatcher_stopped", extra={"pending": self._queue.qsize()})

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._workers)

    def drain_once(self) -> int:
        """Deliver every queued message on the calling thread."""
        delivered = 0
        while True:
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            try:
                self._deliver(message)
                delivered += 1
            finally:
                self._queue.task_done()

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                message = self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            try:
                self._deliver(message)
            except Exception:
                logger.exception(
                    "notification_worker_exception",
                    extra={"message_id": message.message_id},
                )
            finally:
                self._queue.task_done()

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def _deliver(self, message: NotificationMessage) -> None:
        try:
            receipt = self._send(message)
            state = self._state_for(message, receipt)
            sink = self._sinks.get(message.channel)
            if sink is not None:
                try:
                    sink.ack(message.message_id, state)
                except Exception:
                    logger.warning(
                        "notification_ack_failed",
                        extra={"message_id": message.message_id},
                        exc_info=True,
                    )
            self._record(message, state)
        finally:
            self._release(message.message_id)

    def _send(self, message: NotificationMessage) -> Receipt:
        sink = self._sinks.get(message.channel)
        if sink is None:
            return Receipt(message.message_id, False, error=f"no sink for {message.channel.value}")
        with self._limits[message.channel]:
            try:
                return sink.send(message)
            except Exception as exc:
                logger.warning(
                    "notification_send_failed",
                    extra={
                        "message_id": message.message_id,
                        "channel": message.channel.value,
                        "attempt": message.attempt,
                        "error": str(exc),
                    },
                )
                return Receipt(message.message_id, False, error=str(exc))

    def _state_for(self, message: NotificationMessage, receipt: Receipt) -> DeliveryState:
        if receipt.accepted:
            logger.info(
                "notification_delivered",
                extra={
                    "message_id": message.message_id,
                    "workflow_id": message.workflow_id,
                    "channel": message.channel.value,
                    "kind": message.kind.value,
                    "attempt": message.attempt,
                },
            )
            return DeliveryState(delivered=True, provider_message_id=receipt.provider_message_id)
        return DeliveryState(
            delivered=False,
            provider_message_id=receipt.provider_message_id,
            error=receipt.error or "rejected",
        )

    def _next_attempt_at(self, message: NotificationMessage) -> datetime | None:
        if message.channel not in self._sinks or message.attempt >= self._retry.max_attempts:
            logger.warning(
                "notification_abandoned",
                extra={
                    "message_id": message.message_id,
                    "workflow_id": message.workflow_id,
                    "attempts": message.attempt,
                },
            )
            return None
        delay = self._retry.delay_for(message.attempt)
        return self._clock.now_utc() + timedelta(seconds=delay)

    def _record(self, message: NotificationMessage, state: DeliveryState) -> None:
        if self._recorder is None:
            return
        next_attempt_at = None if state.delivered else self._next_attempt_at(message)
        try:
            self._recorder.record_delivery(
                message.workflow_id,
                message.message_id,
                state.delivered,
                opened=state.opened,
                provider_message_id=state.provider_message_id,
                error=state.error,
                next_attempt_at=next_attempt_at,
            )
        except BypassEngineError as exc:
            logger.warning(
                "delivery_record_failed",
                extra={
                    "workflow_id": message.workflow_id,
                    "message_id": message.message_id,
                    "error_code": exc.code,
                },
            )

    def _release(self, message_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(message_id)

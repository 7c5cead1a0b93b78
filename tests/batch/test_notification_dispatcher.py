"""Tests for the notification outbox: retries, abandonment, limits, queue bounds."""

import threading
import time
from dataclasses import replace
from datetime import timedelta

from bypass_batch.services.notification_dispatcher import NotificationDispatcher
from bypass_config.schema import RetryConfig
from bypass_kernel.domain.approval import MessageKind, NotificationChannel
from bypass_kernel.domain.notifications import Receipt
from bypass_services.notifications import RecordingSink
from conftest import START

EMAIL = NotificationChannel.EMAIL
PUSH = NotificationChannel.PUSH


def _sinks(**overrides):
    sinks = {channel: RecordingSink(channel) for channel in NotificationChannel}
    sinks.update({NotificationChannel(name): sink for name, sink in overrides.items()})
    return sinks


def _record(workflow, channel):
    return next(n for n in workflow.notifications if n.channel == channel)


class SlowSink:
    """Email sink that tracks how many sends overlap."""

    channel = EMAIL

    def __init__(self, delay=0.05):
        self.delay = delay
        self.sent = []
        self.max_active = 0
        self._active = 0
        self._lock = threading.Lock()

    def send(self, message):
        with self._lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        time.sleep(self.delay)
        with self._lock:
            self._active -= 1
            self.sent.append(message)
        return Receipt(message.message_id, True)

    def ack(self, message_id, state):
        pass


class TestDelivery:

    def test_delivers_and_records_outcome(self, harness):
        wf = harness.create(financial_impact="6000")

        assert harness.deliver() == 2

        final = harness.get(wf.workflow_id)
        assert final.undelivered_count == 0
        email = _record(final, EMAIL)
        assert email.attempts == 1
        assert email.provider_message_id == f"rec-{email.message_id}"
        assert harness.sinks[EMAIL].acks[email.message_id].delivered is True
        (message,) = harness.sent(EMAIL)
        assert message.kind == MessageKind.APPROVAL_REQUESTED
        assert message.recipient_id == "m1"

    def test_failed_send_schedules_backoff(self, make_harness, captured_logs):
        harness = make_harness(sinks=_sinks(email=RecordingSink(EMAIL, fail_times=1)))
        wf = harness.create(financial_impact="6000")

        harness.deliver()

        final = harness.get(wf.workflow_id)
        email = _record(final, EMAIL)
        assert email.delivered is False
        assert email.attempts == 1
        assert email.error == "email_sink unavailable: provider down"
        assert email.next_attempt_at == START + timedelta(seconds=30)
        assert _record(final, PUSH).delivered is True
        assert any(r["message"] == "notification_send_failed" for r in captured_logs())

    def test_retry_succeeds_after_backoff(self, make_harness):
        harness = make_harness(sinks=_sinks(email=RecordingSink(EMAIL, fail_times=1)))
        wf = harness.create(financial_impact="6000")
        harness.deliver()

        assert harness.recovery.tick() == 0
        harness.advance(1)
        assert harness.recovery.tick() == 1
        harness.deliver()

        email = _record(harness.get(wf.workflow_id), EMAIL)
        assert email.delivered is True
        assert email.attempts == 2
        assert email.next_attempt_at is None
        assert harness.sent(EMAIL)[0].attempt == 2

    def test_abandoned_after_max_attempts(self, make_harness, captured_logs):
        harness = make_harness(
            sinks=_sinks(email=RecordingSink(EMAIL, reject=True)),
            notification_retry=RetryConfig(max_attempts=1, base_delay_seconds=1, max_delay_seconds=1),
        )
        wf = harness.create(financial_impact="6000")
        harness.deliver()

        email = _record(harness.get(wf.workflow_id), EMAIL)
        assert email.delivered is False
        assert email.error == "rejected by provider"
        assert email.next_attempt_at is None
        assert any(r["message"] == "notification_abandoned" for r in captured_logs())

        harness.advance(60)
        assert harness.recovery.tick() == 0

    def test_missing_sink_is_abandoned(self, make_harness):
        sinks = _sinks()
        del sinks[PUSH]
        harness = make_harness(sinks=sinks)
        wf = harness.create(financial_impact="6000")

        harness.deliver()

        push = _record(harness.get(wf.workflow_id), PUSH)
        assert push.delivered is False
        assert push.error == "no sink for push"
        assert push.next_attempt_at is None
        assert _record(harness.get(wf.workflow_id), EMAIL).delivered is True


class TestOutbox:

    def test_same_message_is_queued_once(self, harness):
        wf = harness.create(financial_impact="6000")

        assert harness.dispatcher.depth == 2
        assert harness.dispatcher.offer(wf, wf.notifications) == 0
        assert harness.dispatcher.depth == 2

    def test_queue_full_drops_without_blocking(self, harness, captured_logs):
        wf = harness.create(financial_impact="6000")
        dispatcher = NotificationDispatcher(
            _sinks(), retry=RetryConfig(), clock=harness.clock, queue_max_depth=1
        )

        assert dispatcher.offer(wf, wf.notifications) == 1
        assert dispatcher.depth == 1
        full = [r for r in captured_logs() if r["message"] == "notification_queue_full"]
        assert full[0]["message_id"] == wf.notifications[1].message_id

        # The dropped record is free to be offered again once there is room
        dispatcher.drain_once()
        assert dispatcher.offer(wf, wf.notifications[1:]) == 1

    def test_unbound_dispatcher_still_sends(self, harness):
        wf = harness.create(financial_impact="6000")
        sinks = _sinks()
        dispatcher = NotificationDispatcher(sinks, retry=RetryConfig(), clock=harness.clock)

        dispatcher.offer(wf, wf.notifications)
        assert dispatcher.drain_once() == 2

        assert len(sinks[EMAIL].sent) == 1
        assert harness.get(wf.workflow_id).undelivered_count == 2


class TestWorkers:

    def test_channel_concurrency_limit(self, harness):
        wf = harness.create(financial_impact="6000")
        template = _record(wf, EMAIL)
        records = [replace(template, message_id=f"{template.message_id}-{n}") for n in range(4)]
        sink = SlowSink()
        dispatcher = NotificationDispatcher(
            {EMAIL: sink},
            retry=RetryConfig(),
            clock=harness.clock,
            channel_limits={EMAIL: 1},
            worker_count=4,
        )

        dispatcher.start()
        try:
            assert dispatcher.offer(wf, records) == 4
            deadline = time.monotonic() + 5
            while len(sink.sent) < 4 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            dispatcher.stop(timeout=5)

        assert len(sink.sent) == 4
        assert sink.max_active == 1
        assert dispatcher.is_running is False

    def test_workers_record_outcomes(self, harness):
        wf = harness.create(financial_impact="6000")

        harness.dispatcher.start()
        try:
            deadline = time.monotonic() + 5
            while harness.get(wf.workflow_id).undelivered_count and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            harness.dispatcher.stop(timeout=5)

        assert harness.get(wf.workflow_id).undelivered_count == 0

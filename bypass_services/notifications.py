"""
Notification sinks -- one ``NotificationSink`` per delivery channel.

Responsibility:
    Turn a rendered ``NotificationMessage`` into a channel payload, resolve
    the recipient's address, validate it, and hand the payload to a
    transport.  Each sink keeps the last ``DeliveryState`` it was
    acknowledged with.

Architecture position:
    Services.  Driven only by ``bypass_batch`` (the dispatcher).  Provider
    integrations (SMTP relay, SMS gateway, push service, chat webhook)
    are injected as ``Transport`` callables; the default transport only
    logs the payload and returns a synthetic provider id.

Failure modes:
    - Unresolvable or malformed recipient address: rejected receipt, no
      transport call.
    - Transport exception: propagates to the dispatcher, which turns it
      into a failed receipt and schedules a retry.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import re
import threading
from typing import Any, Callable, Protocol
from uuid import uuid4

from bypass_kernel.domain.approval import NotificationChannel
from bypass_kernel.domain.notifications import DeliveryState, NotificationMessage, Receipt
from bypass_kernel.exceptions import TransientUnavailableError
from bypass_kernel.logging_config import get_logger

logger = get_logger("services.notifications")

AddressResolver = Callable[[str, str], str | None]


class Transport(Protocol):
    def __call__(self, address: str, payload: dict[str, Any]) -> str | None: ...


class LoggingTransport:
    """Logs the payload and returns a synthetic provider message id."""

    def __init__(self, channel: NotificationChannel):
        self._channel = channel

    def __call__(self, address: str, payload: dict[str, Any]) -> str | None:
        provider_id = f"{self._channel.value}_{uuid4().hex[:16]}"
        logger.info(
            "notification_transport_logged",
            extra={
                "channel": self._channel.value,
                "provider_message_id": provider_id,
                "message_id": payload.get("message_id"),
            },
        )
        return provider_id


def _identity(tenant_id: str, user_id: str) -> str | None:
    return user_id


class _ChannelSink:
    channel: NotificationChannel
    address_pattern: re.Pattern[str] | None = None

    def __init__(
        self,
        transport: Transport | None = None,
        resolve_address: AddressResolver | None = None,
    ):
        self._transport = transport or LoggingTransport(self.channel)
        self._resolve = resolve_address or _identity
        self._states: dict[str, DeliveryState] = {}
        self._lock = threading.Lock()

    def send(self, message: NotificationMessage) -> Receipt:
        address = self._resolve(message.tenant_id, message.recipient_id)
        if not address or (
            self.address_pattern is not None and not self.address_pattern.match(address)
        ):
            logger.warning(
                "notification_recipient_invalid",
                extra={
                    "message_id": message.message_id,
                    "channel": self.channel.value,
                    "recipient_id": message.recipient_id,
                },
            )
            return Receipt(message.message_id, False, error="invalid recipient address")
        provider_id = self._transport(address, self.payload(message))
        return Receipt(message.message_id, True, provider_message_id=provider_id)

    def ack(self, message_id: str, state: DeliveryState) -> None:
        with self._lock:
            self._states[message_id] = state

    def delivery_state(self, message_id: str) -> DeliveryState | None:
        with self._lock:
            return self._states.get(message_id)

    def payload(self, message: NotificationMessage) -> dict[str, Any]:
        raise NotImplementedError


class EmailSink(_ChannelSink):
    channel = NotificationChannel.EMAIL
    address_pattern = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

    def payload(self, message: NotificationMessage) -> dict[str, Any]:
        return {
            "message_id": message.message_id,
            "subject": message.subject,
            "text": message.body,
            "headers": {"X-Workflow-Id": message.workflow_id},
        }


class SmsSink(_ChannelSink):
    channel = NotificationChannel.SMS
    address_pattern = re.compile(r"^\+?[1-9]\d{1,14}$")
    max_length = 160

    def payload(self, message: NotificationMessage) -> dict[str, Any]:
        text = f"{message.subject}: {message.workflow_id}"
        return {"message_id": message.message_id, "text": text[: self.max_length]}


class PushSink(_ChannelSink):
    channel = NotificationChannel.PUSH

    def payload(self, message: NotificationMessage) -> dict[str, Any]:
        return {
            "message_id": message.message_id,
            "title": message.subject,
            "body": message.body,
            "data": dict(message.metadata),
        }


class ChatSink(_ChannelSink):
    channel = NotificationChannel.CHAT

    def payload(self, message: NotificationMessage) -> dict[str, Any]:
        lines = message.body.splitlines()
        return {
            "message_id": message.message_id,
            "text": f"*{message.subject}*",
            "attachments": [{"text": "\n".join(lines[1:])}],
        }


class WebhookSink(_ChannelSink):
    """Posts a JSON document; signs it with HMAC-SHA256 when a secret is set."""

    channel = NotificationChannel.WEBHOOK
    address_pattern = re.compile(r"^https?://.+")

    def __init__(
        self,
        transport: Transport | None = None,
        resolve_address: AddressResolver | None = None,
        signing_secret: str | None = None,
    ):
        super().__init__(transport, resolve_address)
        self._secret = signing_secret

    def payload(self, message: NotificationMessage) -> dict[str, Any]:
        document = {
            "message_id": message.message_id,
            "workflow_id": message.workflow_id,
            "tenant_id": message.tenant_id,
            "kind": message.kind.value,
            "recipient_id": message.recipient_id,
            "subject": message.subject,
            "attempt": message.attempt,
            "metadata": dict(message.metadata),
        }
        body = json.dumps(document, sort_keys=True, separators=(",", ":"))
        headers = {"Content-Type": "application/json"}
        if self._secret:
            digest = hmac.new(self._secret.encode(), body.encode(), hashlib.sha256).hexdigest()
            headers["X-Signature-SHA256"] = digest
        return {"message_id": message.message_id, "body": body, "headers": headers}


SINK_TYPES: dict[NotificationChannel, type[_ChannelSink]] = {
    NotificationChannel.EMAIL: EmailSink,
    NotificationChannel.SMS: SmsSink,
    NotificationChannel.PUSH: PushSink,
    NotificationChannel.CHAT: ChatSink,
    NotificationChannel.WEBHOOK: WebhookSink,
}


class RecordingSink:
    """In-memory sink that records every message it is asked to send.

    ``fail_times`` makes the first N sends raise TransientUnavailableError;
    ``reject`` makes every send return a rejected receipt.
    """

    def __init__(
        self,
        channel: NotificationChannel,
        fail_times: int = 0,
        reject: bool = False,
    ):
        self.channel = channel
        self.sent: list[NotificationMessage] = []
        self.acks: dict[str, DeliveryState] = {}
        self._fail_times = fail_times
        self._reject = reject
        self._lock = threading.Lock()

    def send(self, message: NotificationMessage) -> Receipt:
        with self._lock:
            if self._fail_times > 0:
                self._fail_times -= 1
                raise TransientUnavailableError(f"{self.channel.value}_sink", "provider down")
            self.sent.append(message)
        if self._reject:
            return Receipt(message.message_id, False, error="rejected by provider")
        return Receipt(message.message_id, True, provider_message_id=f"rec-{message.message_id}")

    def ack(self, message_id: str, state: DeliveryState) -> None:
        with self._lock:
            self.acks[message_id] = state

    def messages_for(self, recipient_id: str) -> list[NotificationMessage]:
        with self._lock:
            return [m for m in self.sent if m.recipient_id == recipient_id]

    def clear(self) -> None:
        with self._lock:
            self.sent.clear()
            self.acks.clear()

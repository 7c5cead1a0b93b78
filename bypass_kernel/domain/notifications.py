"""
Notification sink contract and message rendering.

Responsibility:
    Defines what a delivery backend receives (``NotificationMessage``),
    what it answers (``Receipt``), the per-message delivery state it is
    acknowledged with (``DeliveryState``), and the ``NotificationSink``
    capability set every channel implements.  ``render_message`` turns a
    workflow's ``NotificationRecord`` into a message.

Architecture position:
    Kernel > Domain -- pure types and one pure function.  Concrete sinks
    live in ``bypass_services.notifications``; the dispatcher in
    ``bypass_batch`` drives them.

Invariants enforced:
    - ``message_id`` is the record's stable id on every attempt, so sinks
      and consumers can deduplicate at-least-once deliveries.
    - Message bodies carry identifiers only, never request notes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from bypass_kernel.domain.approval import (
    MessageKind,
    NotificationChannel,
    NotificationRecord,
    Workflow,
    WorkflowStatus,
)


@dataclass(frozen=True)
class NotificationMessage:
    message_id: str
    workflow_id: str
    tenant_id: str
    kind: MessageKind
    channel: NotificationChannel
    recipient_id: str
    subject: str
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1


@dataclass(frozen=True)
class Receipt:
    """Synchronous answer of a sink to ``send``."""

    message_id: str
    accepted: bool
    provider_message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class DeliveryState:
    delivered: bool
    opened: bool = False
    provider_message_id: str | None = None
    error: str | None = None


class NotificationSink(Protocol):
    """One delivery channel (email, sms, push, chat, webhook)."""

    channel: NotificationChannel

    def send(self, message: NotificationMessage) -> Receipt: ...

    def ack(self, message_id: str, state: DeliveryState) -> None: ...


_SUBJECTS: dict[MessageKind, str] = {
    MessageKind.APPROVAL_REQUESTED: "Bypass Approval Required",
    MessageKind.APPROVAL_REMINDER: "Reminder: Bypass Approval Pending",
    MessageKind.ESCALATED: "Escalated Bypass Approval Required",
    MessageKind.DELEGATED: "Delegated Bypass Approval",
    MessageKind.EXPIRED: "Bypass Approval Timeout",
    MessageKind.CANCELLED: "Bypass Approval Cancelled",
}


def _subject(kind: MessageKind, workflow: Workflow) -> str:
    if kind == MessageKind.COMPLETED:
        if workflow.status == WorkflowStatus.REJECTED:
            return "Bypass Approval Rejected"
        return "Bypass Approval Completed"
    return _SUBJECTS[kind]


def render_message(
    workflow: Workflow, record: NotificationRecord, attempt: int = 1
) -> NotificationMessage:
    subject = _subject(record.kind, workflow)
    lines = [
        subject,
        f"Workflow ID: {workflow.workflow_id}",
        f"Urgency: {workflow.urgency.value}",
    ]
    if record.kind == MessageKind.ESCALATED:
        lines.append(f"Escalation Level: {workflow.escalation.current_level}")
    if record.kind == MessageKind.COMPLETED:
        lines.append(f"Outcome: {workflow.status.value}")
    if workflow.timing.timeout_at is not None and record.kind in (
        MessageKind.APPROVAL_REQUESTED,
        MessageKind.APPROVAL_REMINDER,
        MessageKind.ESCALATED,
        MessageKind.DELEGATED,
    ):
        lines.append(f"Respond by: {workflow.timing.timeout_at.isoformat()}")
    return NotificationMessage(
        message_id=record.message_id,
        workflow_id=workflow.workflow_id,
        tenant_id=workflow.tenant_id,
        kind=record.kind,
        channel=record.channel,
        recipient_id=record.recipient_id,
        subject=subject,
        body="\n".join(lines),
        metadata={
            "workflow_id": workflow.workflow_id,
            "kind": record.kind.value,
            "urgency": workflow.urgency.value,
            "sequence": record.sequence,
        },
        attempt=attempt,
    )

"""
Module: bypass_kernel.models.workflow
Responsibility: ORM persistence for workflow aggregates and their audit
    trail, plus the JSON document codec for the aggregate.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - request_id is UNIQUE: one workflow per bypass request.
    - Persisted status is never 'escalated' (DB check constraint).
    - Audit rows are keyed by (workflow_id, sequence, position) and are
      append-only (see db/immutability.py).

Failure modes:
    - IntegrityError on duplicate request_id or duplicate audit key.
    - ImmutabilityViolationError on audit row UPDATE/DELETE.

Audit relevance:
    The workflow row carries the whole aggregate as a document; the
    workflow_audit table duplicates the audit entries as an indexed,
    append-only log written in the same transaction as the row.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from bypass_kernel.db.base import Base
from bypass_kernel.domain.approval import (
    ActorContext,
    Analytics,
    AuditEntry,
    Complexity,
    EscalationSettings,
    EscalationTarget,
    FinalAction,
    MessageKind,
    NotificationChannel,
    NotificationRecord,
    ReasonCategory,
    Reassignment,
    ResponseChannel,
    Shift,
    StepStatus,
    Timing,
    TriggeredRule,
    Urgency,
    Workflow,
    WorkflowStatus,
    WorkflowStep,
)

DOCUMENT_FORMAT = 1

_Document = JSON().with_variant(JSONB(), "postgresql")


# =========================================================================
# Document codec
# =========================================================================


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


def _td(value: timedelta | None) -> float | None:
    return value.total_seconds() if value is not None else None


def _parse_td(value: float | None) -> timedelta | None:
    return timedelta(seconds=value) if value is not None else None


def _actor_context_to_dict(ctx: ActorContext | None) -> dict | None:
    if ctx is None:
        return None
    return {
        "channel": ctx.channel.value,
        "ip_address": ctx.ip_address,
        "user_agent": ctx.user_agent,
    }


def _actor_context_from_dict(data: dict | None) -> ActorContext | None:
    if data is None:
        return None
    return ActorContext(
        channel=ResponseChannel(data["channel"]),
        ip_address=data.get("ip_address"),
        user_agent=data.get("user_agent"),
    )


def audit_entry_to_dict(entry: AuditEntry) -> dict[str, Any]:
    return {
        "sequence": entry.sequence,
        "position": entry.position,
        "action": entry.action,
        "timestamp": _dt(entry.timestamp),
        "actor_id": entry.actor_id,
        "details": entry.details,
        "actor_context": _actor_context_to_dict(entry.actor_context),
    }


def audit_entry_from_dict(data: dict[str, Any]) -> AuditEntry:
    return AuditEntry(
        sequence=data["sequence"],
        position=data["position"],
        action=data["action"],
        timestamp=_parse_dt(data["timestamp"]),
        actor_id=data.get("actor_id"),
        details=dict(data.get("details") or {}),
        actor_context=_actor_context_from_dict(data.get("actor_context")),
    )


def _step_to_dict(step: WorkflowStep) -> dict[str, Any]:
    return {
        "level": step.level,
        "required_role": step.required_role,
        "timeout": _td(step.timeout),
        "status": step.status.value,
        "assigned_to": step.assigned_to,
        "requested_at": _dt(step.requested_at),
        "deadline": _dt(step.deadline),
        "responded_at": _dt(step.responded_at),
        "response_latency": _td(step.response_latency),
        "channel": step.channel.value if step.channel else None,
        "notes": step.notes,
        "delegatee_id": step.delegatee_id,
        "ip_address": step.ip_address,
        "user_agent": step.user_agent,
        "auto_approved": step.auto_approved,
        "reassignments": [
            {
                "kind": r.kind.value,
                "from_user": r.from_user,
                "to_user": r.to_user,
                "at": _dt(r.at),
                "reason": r.reason,
            }
            for r in step.reassignments
        ],
    }


def _step_from_dict(data: dict[str, Any]) -> WorkflowStep:
    return WorkflowStep(
        level=data["level"],
        required_role=data["required_role"],
        timeout=_parse_td(data["timeout"]),
        status=StepStatus(data["status"]),
        assigned_to=data.get("assigned_to"),
        requested_at=_parse_dt(data.get("requested_at")),
        deadline=_parse_dt(data.get("deadline")),
        responded_at=_parse_dt(data.get("responded_at")),
        response_latency=_parse_td(data.get("response_latency")),
        channel=ResponseChannel(data["channel"]) if data.get("channel") else None,
        notes=data.get("notes"),
        delegatee_id=data.get("delegatee_id"),
        ip_address=data.get("ip_address"),
        user_agent=data.get("user_agent"),
        auto_approved=data.get("auto_approved", False),
        reassignments=tuple(
            Reassignment(
                kind=StepStatus(r["kind"]),
                from_user=r.get("from_user"),
                to_user=r.get("to_user"),
                at=_parse_dt(r["at"]),
                reason=r.get("reason", ""),
            )
            for r in data.get("reassignments", ())
        ),
    )


def _notification_to_dict(record: NotificationRecord) -> dict[str, Any]:
    return {
        "message_id": record.message_id,
        "sequence": record.sequence,
        "kind": record.kind.value,
        "channel": record.channel.value,
        "recipient_id": record.recipient_id,
        "sent_at": _dt(record.sent_at),
        "delivered": record.delivered,
        "opened": record.opened,
        "responded": record.responded,
        "provider_message_id": record.provider_message_id,
        "error": record.error,
        "attempts": record.attempts,
        "next_attempt_at": _dt(record.next_attempt_at),
    }


def _notification_from_dict(data: dict[str, Any]) -> NotificationRecord:
    return NotificationRecord(
        message_id=data["message_id"],
        sequence=data["sequence"],
        kind=MessageKind(data["kind"]),
        channel=NotificationChannel(data["channel"]),
        recipient_id=data["recipient_id"],
        sent_at=_parse_dt(data["sent_at"]),
        delivered=data.get("delivered", False),
        opened=data.get("opened", False),
        responded=data.get("responded", False),
        provider_message_id=data.get("provider_message_id"),
        error=data.get("error"),
        attempts=data.get("attempts", 0),
        next_attempt_at=_parse_dt(data.get("next_attempt_at")),
    )


def workflow_to_document(workflow: Workflow) -> dict[str, Any]:
    """Encode the aggregate as a JSON-compatible document."""
    esc = workflow.escalation
    timing = workflow.timing
    analytics = workflow.analytics
    return {
        "format": DOCUMENT_FORMAT,
        "workflow_id": workflow.workflow_id,
        "tenant_id": workflow.tenant_id,
        "request_id": workflow.request_id,
        "initiator_id": workflow.initiator_id,
        "version": workflow.version,
        "status": workflow.status.value,
        "current_level": workflow.current_level,
        "steps": [_step_to_dict(s) for s in workflow.steps],
        "escalation": {
            "enabled": esc.enabled,
            "current_level": esc.current_level,
            "max_level": esc.max_level,
            "final_action": esc.final_action.value,
            "chain": [
                {
                    "escalate_to_role": t.escalate_to_role,
                    "escalate_to_user": t.escalate_to_user,
                    "timeout": _td(t.timeout),
                    "channels": [c.value for c in t.channels],
                }
                for t in esc.chain
            ],
        },
        "timing": {
            "initiated_at": _dt(timing.initiated_at),
            "timeout_at": _dt(timing.timeout_at),
            "global_deadline": _dt(timing.global_deadline),
            "first_response_at": _dt(timing.first_response_at),
            "completed_at": _dt(timing.completed_at),
            "total_duration": _td(timing.total_duration),
            "average_response_time": _td(timing.average_response_time),
            "escalated_at": _dt(timing.escalated_at),
            "reminders_sent": timing.reminders_sent,
            "last_reminder_at": _dt(timing.last_reminder_at),
        },
        "analytics": {
            "weekday": analytics.weekday,
            "shift": analytics.shift.value,
            "business_hours": analytics.business_hours,
            "urgency": analytics.urgency.value,
            "complexity": analytics.complexity.value,
            "approval_path": analytics.approval_path,
        },
        "reason_category": workflow.reason_category.value,
        "financial_impact": str(workflow.financial_impact),
        "risk_score": workflow.risk_score,
        "urgency": workflow.urgency.value,
        "auto_approved": workflow.auto_approved,
        "triggering_rules": [
            {
                "rule": r.rule,
                "priority": r.priority,
                "threshold": r.threshold,
                "actual_value": r.actual_value,
                "roles": list(r.roles),
            }
            for r in workflow.triggering_rules
        ],
        "notifications": [_notification_to_dict(n) for n in workflow.notifications],
        "audit": [audit_entry_to_dict(a) for a in workflow.audit],
        "created_at": _dt(workflow.created_at),
        "updated_at": _dt(workflow.updated_at),
    }


def workflow_from_document(doc: dict[str, Any]) -> Workflow:
    """Decode a document written by ``workflow_to_document``."""
    esc = doc["escalation"]
    timing = doc["timing"]
    analytics = doc["analytics"]
    return Workflow(
        workflow_id=doc["workflow_id"],
        tenant_id=doc["tenant_id"],
        request_id=doc["request_id"],
        initiator_id=doc["initiator_id"],
        version=doc["version"],
        status=WorkflowStatus(doc["status"]),
        current_level=doc["current_level"],
        steps=tuple(_step_from_dict(s) for s in doc["steps"]),
        escalation=EscalationSettings(
            enabled=esc["enabled"],
            current_level=esc["current_level"],
            max_level=esc["max_level"],
            final_action=FinalAction(esc["final_action"]),
            chain=tuple(
                EscalationTarget(
                    escalate_to_role=t.get("escalate_to_role"),
                    escalate_to_user=t.get("escalate_to_user"),
                    timeout=_parse_td(t["timeout"]),
                    channels=tuple(NotificationChannel(c) for c in t.get("channels", ())),
                )
                for t in esc.get("chain", ())
            ),
        ),
        timing=Timing(
            initiated_at=_parse_dt(timing["initiated_at"]),
            timeout_at=_parse_dt(timing.get("timeout_at")),
            global_deadline=_parse_dt(timing.get("global_deadline")),
            first_response_at=_parse_dt(timing.get("first_response_at")),
            completed_at=_parse_dt(timing.get("completed_at")),
            total_duration=_parse_td(timing.get("total_duration")),
            average_response_time=_parse_td(timing.get("average_response_time")),
            escalated_at=_parse_dt(timing.get("escalated_at")),
            reminders_sent=timing.get("reminders_sent", 0),
            last_reminder_at=_parse_dt(timing.get("last_reminder_at")),
        ),
        analytics=Analytics(
            weekday=analytics["weekday"],
            shift=Shift(analytics["shift"]),
            business_hours=analytics["business_hours"],
            urgency=Urgency(analytics["urgency"]),
            complexity=Complexity(analytics["complexity"]),
            approval_path=analytics.get("approval_path", ""),
        ),
        reason_category=ReasonCategory(doc["reason_category"]),
        financial_impact=Decimal(doc["financial_impact"]),
        risk_score=doc["risk_score"],
        urgency=Urgency(doc["urgency"]),
        auto_approved=doc.get("auto_approved", False),
        triggering_rules=tuple(
            TriggeredRule(
                rule=r["rule"],
                priority=r["priority"],
                threshold=r["threshold"],
                actual_value=r["actual_value"],
                roles=tuple(r.get("roles", ())),
            )
            for r in doc.get("triggering_rules", ())
        ),
        notifications=tuple(_notification_from_dict(n) for n in doc.get("notifications", ())),
        audit=tuple(audit_entry_from_dict(a) for a in doc.get("audit", ())),
        created_at=_parse_dt(doc.get("created_at")),
        updated_at=_parse_dt(doc.get("updated_at")),
    )


# =========================================================================
# ORM models
# =========================================================================


class WorkflowModel(Base):
    """One row per workflow: indexed columns plus the aggregate document.

    Contract:
        The indexed columns are projections of the document and are
        rewritten together with it on every compare-and-swap.

    Guarantees:
        - request_id is unique.
        - version strictly increases across writes (enforced by the store).
    """

    __tablename__ = "workflows"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'expired', 'cancelled')",
            name="ck_workflows_valid_status",
        ),
        Index("ix_workflows_tenant_status_updated", "tenant_id", "status", "updated_at"),
        Index("ix_workflows_timeout_at", "timeout_at"),
        Index("ix_workflows_assignee_status", "current_assignee", "status"),
        Index("ix_workflows_undelivered", "undelivered_count"),
    )

    workflow_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    request_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    initiator_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[int] = mapped_column(nullable=False)
    current_assignee: Mapped[str | None] = mapped_column(String(128), nullable=True)
    timeout_at: Mapped[datetime | None] = mapped_column(nullable=True)
    undelivered_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claim_owner: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    document: Mapped[dict] = mapped_column(_Document, nullable=False)

    def __repr__(self) -> str:
        return f"<Workflow {self.workflow_id} v{self.version} status={self.status}>"

    def apply(self, workflow: Workflow) -> None:
        """Overwrite the row with ``workflow``; the claim columns are left alone."""
        self.request_id = workflow.request_id
        self.tenant_id = workflow.tenant_id
        self.initiator_id = workflow.initiator_id
        self.status = workflow.status.value
        self.version = workflow.version
        self.current_assignee = workflow.current_approver
        self.timeout_at = workflow.timing.timeout_at
        self.undelivered_count = workflow.undelivered_count
        self.created_at = workflow.created_at or workflow.timing.initiated_at
        self.updated_at = workflow.updated_at or self.created_at
        self.completed_at = workflow.timing.completed_at
        self.document = workflow_to_document(workflow)

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> WorkflowModel:
        row = cls(workflow_id=workflow.workflow_id)
        row.apply(workflow)
        return row

    def to_workflow(self) -> Workflow:
        return workflow_from_document(self.document)


class WorkflowAuditModel(Base):
    """Append-only audit entry, keyed by (workflow_id, sequence, position).

    ``sequence`` equals the workflow version committed with the entry.
    """

    __tablename__ = "workflow_audit"

    __table_args__ = (
        Index("ix_workflow_audit_action", "action", "timestamp"),
    )

    workflow_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sequence: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    position: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    details: Mapped[dict] = mapped_column(_Document, nullable=False)
    actor_context: Mapped[dict | None] = mapped_column(_Document, nullable=True)

    def __repr__(self) -> str:
        return f"<WorkflowAudit {self.workflow_id}#{self.sequence}.{self.position} {self.action}>"

    @classmethod
    def from_entry(cls, workflow_id: str, entry: AuditEntry) -> WorkflowAuditModel:
        return cls(
            workflow_id=workflow_id,
            sequence=entry.sequence,
            position=entry.position,
            action=entry.action,
            actor_id=entry.actor_id,
            timestamp=entry.timestamp,
            details=entry.details,
            actor_context=_actor_context_to_dict(entry.actor_context),
        )

    def to_entry(self) -> AuditEntry:
        return AuditEntry(
            sequence=self.sequence,
            position=self.position,
            action=self.action,
            timestamp=self.timestamp,
            actor_id=self.actor_id,
            details=dict(self.details or {}),
            actor_context=_actor_context_from_dict(self.actor_context),
        )

"""
Approval workflow domain types (``bypass_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the administrative bypass approval engine.
Defines the workflow and step state machines, the bypass request the
engine consumes, the plan the rule engine produces, and the workflow
aggregate with its owned children (steps, notifications, audit).

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``services/`` or outer layers.

Invariants enforced
-------------------
* ``WORKFLOW_TRANSITIONS`` and ``STEP_TRANSITIONS`` define the only
  valid status transitions.  Terminal states have no outgoing edges.
* All aggregates are frozen; a mutation produces a new ``Workflow``
  with a strictly higher ``version``.
* Notifications and audit entries are append-only tuples owned by the
  workflow.  Audit entries carry ``sequence == version`` of the commit
  that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any


# =========================================================================
# Status lifecycles
# =========================================================================


class WorkflowStatus(str, Enum):
    """Workflow lifecycle states.

    ``ESCALATED`` is an audit-visible marker: an escalation is recorded as
    Pending -> Escalated -> Pending inside one commit, and the persisted
    status is never ``ESCALATED``.
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset({
        WorkflowStatus.PENDING,
        WorkflowStatus.APPROVED,
        WorkflowStatus.REJECTED,
        WorkflowStatus.ESCALATED,
        WorkflowStatus.EXPIRED,
        WorkflowStatus.CANCELLED,
    }),
    WorkflowStatus.ESCALATED: frozenset({WorkflowStatus.PENDING}),
    WorkflowStatus.APPROVED: frozenset(),
    WorkflowStatus.REJECTED: frozenset(),
    WorkflowStatus.EXPIRED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
}

TERMINAL_WORKFLOW_STATUSES: frozenset[WorkflowStatus] = frozenset({
    WorkflowStatus.APPROVED,
    WorkflowStatus.REJECTED,
    WorkflowStatus.EXPIRED,
    WorkflowStatus.CANCELLED,
})


class StepStatus(str, Enum):
    """Approval step states.

    ``QUEUED`` marks a level that has not been reached yet; it becomes
    ``PENDING`` when the previous level approves.  ``ESCALATED`` and
    ``DELEGATED`` label entries in a step's reassignment history; the
    step itself stays ``PENDING`` while it is reassigned.
    """

    QUEUED = "queued"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    EXPIRED = "expired"
    SKIPPED = "skipped"
    DELEGATED = "delegated"


STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.QUEUED: frozenset({StepStatus.PENDING, StepStatus.SKIPPED}),
    StepStatus.PENDING: frozenset({
        StepStatus.APPROVED,
        StepStatus.REJECTED,
        StepStatus.EXPIRED,
        StepStatus.SKIPPED,
    }),
    StepStatus.APPROVED: frozenset(),
    StepStatus.REJECTED: frozenset(),
    StepStatus.ESCALATED: frozenset(),
    StepStatus.EXPIRED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
    StepStatus.DELEGATED: frozenset(),
}

COMPLETED_STEP_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.APPROVED,
    StepStatus.REJECTED,
    StepStatus.SKIPPED,
})


class Decision(str, Enum):
    """Decisions an approver can make on the active step."""

    APPROVE = "approve"
    REJECT = "reject"


class FinalAction(str, Enum):
    """What happens when a workflow times out with no escalation left."""

    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    MANUAL_REVIEW = "manual_review"


class Urgency(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class UrgencyHint(str, Enum):
    """Urgency declared by the bypass initiator."""

    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ReasonCategory(str, Enum):
    """Why the administrative bypass was requested."""

    EMERGENCY_MEDICAL = "emergency_medical"
    SYSTEM_FAILURE = "system_failure"
    INVENTORY_UNAVAILABLE = "inventory_unavailable"
    GUEST_COMPLAINT = "guest_complaint"
    STAFF_SHORTAGE = "staff_shortage"
    TECHNICAL_ISSUE = "technical_issue"
    MANAGEMENT_OVERRIDE = "management_override"
    COMPLIANCE_REQUIREMENT = "compliance_requirement"
    OTHER = "other"


class ResponseChannel(str, Enum):
    """How an approver's response reached the engine."""

    WEB = "web"
    MOBILE = "mobile"
    EMAIL = "email"
    SMS = "sms"
    AUTOMATIC = "automatic"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    CHAT = "chat"
    WEBHOOK = "webhook"


class MessageKind(str, Enum):
    """Kinds of notification messages and real-time events."""

    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_REMINDER = "approval_reminder"
    ESCALATED = "escalated"
    DELEGATED = "delegated"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Message kinds that ask the recipient to act on a step
ACTIONABLE_MESSAGE_KINDS: frozenset[MessageKind] = frozenset({
    MessageKind.APPROVAL_REQUESTED,
    MessageKind.APPROVAL_REMINDER,
    MessageKind.ESCALATED,
    MessageKind.DELEGATED,
})


class Shift(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    CRITICAL = "critical"


# =========================================================================
# Request and plan
# =========================================================================


@dataclass(frozen=True)
class SecurityFlag:
    kind: str
    severity: Severity


@dataclass(frozen=True)
class RequestContext:
    """Clock-derived context of a bypass, in the tenant's local time."""

    weekday: str
    shift: Shift
    business_hours: bool

    @property
    def is_weekend(self) -> bool:
        return self.weekday in ("Saturday", "Sunday")

    @property
    def is_after_hours(self) -> bool:
        """Weekday outside business hours."""
        return not self.business_hours and not self.is_weekend

    @property
    def is_night(self) -> bool:
        return self.shift == Shift.NIGHT


@dataclass(frozen=True)
class BypassRequest:
    """Immutable input to the engine; consumed once to create a workflow.

    ``context`` is normally derived from the clock by the rule engine;
    callers may pin it for replay.
    """

    request_id: str
    tenant_id: str
    initiator_id: str
    reason_category: ReasonCategory
    financial_impact: Decimal
    risk_score: int
    urgency_hint: UrgencyHint = UrgencyHint.NORMAL
    security_flags: tuple[SecurityFlag, ...] = ()
    description: str = ""
    context: RequestContext | None = None


@dataclass(frozen=True)
class PlanLevel:
    level: int
    role: str
    timeout: timedelta


@dataclass(frozen=True)
class TriggeredRule:
    """A rule that fired while planning, kept for audit."""

    rule: str
    priority: int
    threshold: str
    actual_value: str
    roles: tuple[str, ...] = ()


@dataclass(frozen=True)
class ApprovalPlan:
    """Pure output of the rule engine.

    ``required`` is False exactly when ``levels`` is empty, and
    ``auto_approve`` implies not ``required``.
    """

    required: bool
    levels: tuple[PlanLevel, ...]
    urgency: Urgency
    global_timeout: timedelta
    auto_approve: bool
    triggering_rules: tuple[TriggeredRule, ...]
    context: RequestContext

    def __post_init__(self) -> None:
        if self.required != bool(self.levels):
            raise ValueError("required must be True exactly when levels are present")
        if self.auto_approve and self.required:
            raise ValueError("an auto-approved plan cannot require approval")


# =========================================================================
# Workflow aggregate
# =========================================================================


@dataclass(frozen=True)
class EscalationTarget:
    """One entry of the escalation chain.

    With neither ``escalate_to_role`` nor ``escalate_to_user`` set, the
    step escalates to the next role above the step's required role.
    """

    escalate_to_role: str | None = None
    escalate_to_user: str | None = None
    timeout: timedelta = timedelta(minutes=30)
    channels: tuple[NotificationChannel, ...] = ()


@dataclass(frozen=True)
class EscalationSettings:
    enabled: bool = True
    current_level: int = 0
    max_level: int = 3
    chain: tuple[EscalationTarget, ...] = ()
    final_action: FinalAction = FinalAction.MANUAL_REVIEW


@dataclass(frozen=True)
class Reassignment:
    """History entry for a delegation or escalation of a step."""

    kind: StepStatus
    from_user: str | None
    to_user: str | None
    at: datetime
    reason: str = ""


@dataclass(frozen=True)
class WorkflowStep:
    level: int
    required_role: str
    timeout: timedelta
    status: StepStatus = StepStatus.QUEUED
    assigned_to: str | None = None
    requested_at: datetime | None = None
    deadline: datetime | None = None
    responded_at: datetime | None = None
    response_latency: timedelta | None = None
    channel: ResponseChannel | None = None
    notes: str | None = None
    delegatee_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    auto_approved: bool = False
    reassignments: tuple[Reassignment, ...] = ()


@dataclass(frozen=True)
class Timing:
    initiated_at: datetime
    timeout_at: datetime | None = None
    global_deadline: datetime | None = None
    first_response_at: datetime | None = None
    completed_at: datetime | None = None
    total_duration: timedelta | None = None
    average_response_time: timedelta | None = None
    escalated_at: datetime | None = None
    reminders_sent: int = 0
    last_reminder_at: datetime | None = None


@dataclass(frozen=True)
class NotificationRecord:
    """Delivery bookkeeping for one message to one recipient on one channel.

    ``message_id`` is stable across retries; sinks and consumers use it
    for idempotency.
    """

    message_id: str
    sequence: int
    kind: MessageKind
    channel: NotificationChannel
    recipient_id: str
    sent_at: datetime
    delivered: bool = False
    opened: bool = False
    responded: bool = False
    provider_message_id: str | None = None
    error: str | None = None
    attempts: int = 0
    next_attempt_at: datetime | None = None


@dataclass(frozen=True)
class ActorContext:
    """Where a human action came from."""

    channel: ResponseChannel = ResponseChannel.WEB
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AuditEntry:
    """Append-only audit record, keyed by (workflow_id, sequence, position)."""

    sequence: int
    position: int
    action: str
    timestamp: datetime
    actor_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    actor_context: ActorContext | None = None


@dataclass(frozen=True)
class Analytics:
    weekday: str
    shift: Shift
    business_hours: bool
    urgency: Urgency
    complexity: Complexity
    approval_path: str = ""


@dataclass(frozen=True)
class Workflow:
    """The approval workflow aggregate.

    Exclusively owned by the coordinator while a mutation is in flight;
    the store exposes it only through compare-and-swap on ``version``.
    """

    workflow_id: str
    tenant_id: str
    request_id: str
    initiator_id: str
    version: int
    status: WorkflowStatus
    current_level: int
    steps: tuple[WorkflowStep, ...]
    escalation: EscalationSettings
    timing: Timing
    analytics: Analytics
    reason_category: ReasonCategory
    financial_impact: Decimal
    risk_score: int
    urgency: Urgency
    auto_approved: bool = False
    triggering_rules: tuple[TriggeredRule, ...] = ()
    notifications: tuple[NotificationRecord, ...] = ()
    audit: tuple[AuditEntry, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    @property
    def current_step(self) -> WorkflowStep | None:
        if 1 <= self.current_level <= len(self.steps):
            return self.steps[self.current_level - 1]
        return None

    @property
    def current_approver(self) -> str | None:
        step = self.current_step
        if step is None or self.status != WorkflowStatus.PENDING:
            return None
        return step.assigned_to

    @property
    def can_escalate(self) -> bool:
        return (
            self.status == WorkflowStatus.PENDING
            and self.escalation.enabled
            and self.escalation.current_level < self.escalation.max_level
        )

    @property
    def completion_percentage(self) -> int:
        if not self.steps:
            return 0
        done = sum(1 for s in self.steps if s.status in COMPLETED_STEP_STATUSES)
        return round(done / len(self.steps) * 100)

    @property
    def undelivered_count(self) -> int:
        """Records awaiting a first delivery attempt or a scheduled retry."""
        return sum(
            1
            for n in self.notifications
            if not n.delivered and (n.attempts == 0 or n.next_attempt_at is not None)
        )

    def time_remaining(self, now: datetime) -> timedelta | None:
        if self.timing.timeout_at is None:
            return None
        remaining = self.timing.timeout_at - now
        return remaining if remaining > timedelta(0) else timedelta(0)

    def notification(self, message_id: str) -> NotificationRecord | None:
        for record in self.notifications:
            if record.message_id == message_id:
                return record
        return None


# =========================================================================
# Emissions
# =========================================================================


@dataclass(frozen=True)
class WorkflowEvent:
    """Real-time event produced by a transition, published after commit.

    ``user_ids`` and ``roles`` name the scopes beyond the tenant scope,
    which every event is published to.
    """

    kind: MessageKind
    workflow_id: str
    tenant_id: str
    version: int
    payload: dict[str, Any] = field(default_factory=dict)
    user_ids: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()


@dataclass(frozen=True)
class Transition:
    """Result of applying one command to a workflow."""

    workflow: Workflow
    audit: tuple[AuditEntry, ...]
    notifications: tuple[NotificationRecord, ...]
    events: tuple[WorkflowEvent, ...]

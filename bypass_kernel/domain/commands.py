"""
Workflow commands -- pure ``apply(workflow, command, ctx)`` transitions.

Responsibility:
    Every mutation of the workflow aggregate is a command applied by a
    pure function that returns a ``Transition``: the new workflow (version
    bumped, derived fields recomputed) plus the audit entries,
    notification records and real-time events the mutation produced.
    The coordinator owns the load-apply-CAS cycle around these functions.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Approver lookup is injected through
    ``ApplyContext.resolve_approver`` so the functions stay deterministic
    for a given directory snapshot.

Invariants enforced:
    - Only a Pending workflow accepts respond, delegate, escalate, expire,
      cancel and reminded.
    - Only the assignee of the active step may respond or delegate.
    - Exactly one step is Pending while the workflow is Pending.
    - Every transition appends at least one audit entry, all carrying
      ``sequence == new version``.

Failure modes:
    - WorkflowNotPendingError, NotCurrentApproverError, UnauthorisedError,
      EscalationLimitReachedError, ReminderLimitReachedError,
      InvalidInputError, PreconditionFailedError.

Audit relevance:
    The audit actions written here (``workflow_created``,
    ``approval_approved``, ``approval_delegated``, ``workflow_escalated``,
    ...) are the externally visible history of a workflow.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Mapping

from bypass_kernel.domain.approval import (
    ACTIONABLE_MESSAGE_KINDS,
    ActorContext,
    ApprovalPlan,
    AuditEntry,
    BypassRequest,
    Decision,
    EscalationSettings,
    EscalationTarget,
    FinalAction,
    MessageKind,
    NotificationChannel,
    NotificationRecord,
    Reassignment,
    ResponseChannel,
    StepStatus,
    Timing,
    Transition,
    Workflow,
    WorkflowEvent,
    WorkflowStatus,
    WorkflowStep,
)
from bypass_kernel.domain.derivations import derive, derive_analytics
from bypass_kernel.exceptions import (
    EscalationLimitReachedError,
    InvalidInputError,
    InvariantViolationError,
    NotCurrentApproverError,
    PreconditionFailedError,
    ReminderLimitReachedError,
    UnauthorisedError,
    WorkflowNotPendingError,
)

ApproverResolver = Callable[[str, frozenset[str]], "str | None"]

AUTO_APPROVAL_ROLE = "auto_approval"
NOT_REQUIRED_ROLE = "not_required"

DEFAULT_ROUTES: dict[MessageKind, tuple[NotificationChannel, ...]] = {
    kind: (NotificationChannel.EMAIL, NotificationChannel.PUSH)
    for kind in MessageKind
}


def _no_approver(role: str, exclude: frozenset[str]) -> str | None:
    return None


def _plain(value: Any) -> Any:
    """Audit details are stored as JSON; reduce values to JSON types."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass(frozen=True)
class ApplyContext:
    """Everything a transition needs besides the workflow itself."""

    now: datetime
    resolve_approver: ApproverResolver = _no_approver
    routes: Mapping[MessageKind, tuple[NotificationChannel, ...]] = field(
        default_factory=lambda: dict(DEFAULT_ROUTES)
    )
    immediate_notification: bool = True
    escalation_notification: bool = True
    max_reminders: int = 3


# =========================================================================
# Commands
# =========================================================================


@dataclass(frozen=True)
class Respond:
    approver_id: str
    decision: Decision
    notes: str = ""
    actor_context: ActorContext = field(default_factory=ActorContext)


@dataclass(frozen=True)
class Delegate:
    from_approver_id: str
    to_approver_id: str
    reason: str = ""


@dataclass(frozen=True)
class Escalate:
    """Reassign the active step one escalation level up.

    ``target_user`` is resolved by the caller (explicit user or role
    lookup); None leaves the step unassigned.
    """

    reason: str
    target_role: str | None
    target_user: str | None
    timeout: timedelta
    channels: tuple[NotificationChannel, ...] = ()
    actor_id: str | None = None


@dataclass(frozen=True)
class Expire:
    """Apply the final action of a timed-out workflow that cannot escalate."""

    token: datetime


@dataclass(frozen=True)
class Cancel:
    actor_id: str
    reason: str = ""
    is_admin: bool = False


@dataclass(frozen=True)
class Remind:
    n: int


@dataclass(frozen=True)
class RecordDelivery:
    message_id: str
    delivered: bool
    opened: bool = False
    provider_message_id: str | None = None
    error: str | None = None
    next_attempt_at: datetime | None = None


Command = Respond | Delegate | Escalate | Expire | Cancel | Remind | RecordDelivery


# =========================================================================
# Draft -- collects the emissions of one commit
# =========================================================================


class _Draft:
    def __init__(self, workflow: Workflow, ctx: ApplyContext):
        self.base = workflow
        self.ctx = ctx
        self.now = ctx.now
        self.version = workflow.version + 1
        self._audit: list[AuditEntry] = []
        self._notifications: list[NotificationRecord] = []
        self._events: list[WorkflowEvent] = []

    def audit(
        self,
        action: str,
        actor_id: str | None = None,
        actor_context: ActorContext | None = None,
        **details: Any,
    ) -> None:
        self._audit.append(
            AuditEntry(
                sequence=self.version,
                position=len(self._audit),
                action=action,
                timestamp=self.now,
                actor_id=actor_id,
                details={k: _plain(v) for k, v in details.items()},
                actor_context=actor_context,
            )
        )

    def notify(
        self,
        kind: MessageKind,
        recipient_id: str | None,
        channels: tuple[NotificationChannel, ...] = (),
    ) -> None:
        if recipient_id is None:
            return
        for channel in channels or self.ctx.routes.get(kind, ()):
            self._notifications.append(
                NotificationRecord(
                    message_id=(
                        f"{self.base.workflow_id}-{self.version}-"
                        f"{len(self._notifications)}"
                    ),
                    sequence=self.version,
                    kind=kind,
                    channel=channel,
                    recipient_id=recipient_id,
                    sent_at=self.now,
                )
            )

    def emit(
        self,
        kind: MessageKind,
        payload: dict[str, Any],
        user_ids: tuple[str | None, ...] = (),
        roles: tuple[str, ...] = (),
    ) -> None:
        self._events.append(
            WorkflowEvent(
                kind=kind,
                workflow_id=self.base.workflow_id,
                tenant_id=self.base.tenant_id,
                version=self.version,
                payload=payload,
                user_ids=tuple(dict.fromkeys(u for u in user_ids if u)),
                roles=roles,
            )
        )

    def commit(self, workflow: Workflow) -> Transition:
        if not self._audit:
            raise InvariantViolationError(
                workflow.workflow_id, ["transition produced no audit entry"]
            )
        audit = tuple(self._audit)
        notifications = tuple(self._notifications)
        result = derive(
            replace(
                workflow,
                version=self.version,
                updated_at=self.now,
                notifications=workflow.notifications + notifications,
                audit=workflow.audit + audit,
            )
        )
        return Transition(
            workflow=result,
            audit=audit,
            notifications=notifications,
            events=tuple(self._events),
        )


# =========================================================================
# Helpers
# =========================================================================


def _require_pending(workflow: Workflow) -> None:
    if workflow.status != WorkflowStatus.PENDING:
        raise WorkflowNotPendingError(workflow.workflow_id, workflow.status.value)


def _set_step(
    steps: tuple[WorkflowStep, ...], index: int, step: WorkflowStep
) -> tuple[WorkflowStep, ...]:
    return steps[:index] + (step,) + steps[index + 1:]


def _skip_remaining(steps: tuple[WorkflowStep, ...]) -> tuple[WorkflowStep, ...]:
    return tuple(
        replace(s, status=StepStatus.SKIPPED)
        if s.status in (StepStatus.QUEUED, StepStatus.PENDING)
        else s
        for s in steps
    )


def _prior_approvers(workflow: Workflow) -> frozenset[str]:
    return frozenset(
        s.assigned_to
        for s in workflow.steps
        if s.status == StepStatus.APPROVED and s.assigned_to
    )


def _activate(
    draft: _Draft,
    workflow: Workflow,
    steps: tuple[WorkflowStep, ...],
    index: int,
) -> tuple[WorkflowStep, ...]:
    """Make ``steps[index]`` the Pending step and assign an approver."""
    now = draft.now
    step = steps[index]
    exclude = frozenset({workflow.initiator_id}) | _prior_approvers(workflow)
    assignee = draft.ctx.resolve_approver(step.required_role, exclude)
    active = replace(
        step,
        status=StepStatus.PENDING,
        assigned_to=assignee,
        requested_at=now,
        deadline=now + step.timeout,
    )
    draft.audit(
        "approval_requested",
        level=step.level,
        required_role=step.required_role,
        assigned_to=assignee,
        deadline=active.deadline,
    )
    if assignee is None:
        draft.audit(
            "approver_unavailable",
            severity="warning",
            level=step.level,
            required_role=step.required_role,
        )
    elif draft.ctx.immediate_notification:
        draft.notify(MessageKind.APPROVAL_REQUESTED, assignee)
    draft.emit(
        MessageKind.APPROVAL_REQUESTED,
        {"level": step.level, "required_role": step.required_role},
        user_ids=(assignee,),
        roles=(step.required_role,),
    )
    return _set_step(steps, index, active)


def _finish(
    draft: _Draft,
    workflow: Workflow,
    outcome: WorkflowStatus,
    action: str,
    actor_id: str | None = None,
    notify: bool = True,
    **details: Any,
) -> Workflow:
    """Move ``workflow`` to a terminal status and emit its single terminal event."""
    assignee = workflow.current_approver
    finished = replace(
        workflow,
        status=outcome,
        steps=_skip_remaining(workflow.steps),
        timing=replace(workflow.timing, completed_at=draft.now),
    )
    draft.audit(action, actor_id=actor_id, status=outcome.value, **details)

    if outcome == WorkflowStatus.CANCELLED:
        kind = MessageKind.CANCELLED
        recipient = assignee
    elif outcome == WorkflowStatus.EXPIRED:
        kind = MessageKind.EXPIRED
        recipient = workflow.initiator_id
    else:
        kind = MessageKind.COMPLETED
        recipient = workflow.initiator_id
    if notify:
        draft.notify(kind, recipient)
    draft.emit(
        kind,
        {"outcome": outcome.value},
        user_ids=(workflow.initiator_id, assignee),
    )
    return finished


# =========================================================================
# Creation
# =========================================================================


def create_workflow(
    request: BypassRequest,
    plan: ApprovalPlan,
    workflow_id: str,
    escalation: EscalationSettings,
    ctx: ApplyContext,
) -> Transition:
    """Build the first committed version of a workflow from its plan.

    Auto-approved plans and plans requiring nobody complete immediately as
    Approved with one synthetic step; no human is notified.
    """
    now = ctx.now
    if plan.auto_approve or not plan.required:
        synthetic = WorkflowStep(
            level=1,
            required_role=AUTO_APPROVAL_ROLE if plan.auto_approve else NOT_REQUIRED_ROLE,
            timeout=timedelta(0),
            status=StepStatus.APPROVED if plan.auto_approve else StepStatus.SKIPPED,
            requested_at=now,
            responded_at=now if plan.auto_approve else None,
            response_latency=timedelta(0) if plan.auto_approve else None,
            channel=ResponseChannel.AUTOMATIC if plan.auto_approve else None,
            auto_approved=plan.auto_approve,
        )
        steps: tuple[WorkflowStep, ...] = (synthetic,)
    else:
        steps = tuple(
            WorkflowStep(level=lvl.level, required_role=lvl.role, timeout=lvl.timeout)
            for lvl in plan.levels
        )

    base = Workflow(
        workflow_id=workflow_id,
        tenant_id=request.tenant_id,
        request_id=request.request_id,
        initiator_id=request.initiator_id,
        version=0,
        status=WorkflowStatus.PENDING,
        current_level=1,
        steps=steps,
        escalation=escalation,
        timing=Timing(
            initiated_at=now,
            global_deadline=now + plan.global_timeout if plan.required else None,
        ),
        analytics=derive_analytics(plan.context, plan.urgency, steps),
        reason_category=request.reason_category,
        financial_impact=request.financial_impact,
        risk_score=request.risk_score,
        urgency=plan.urgency,
        auto_approved=plan.auto_approve,
        triggering_rules=plan.triggering_rules,
        created_at=now,
    )

    draft = _Draft(base, ctx)
    draft.audit(
        "workflow_created",
        actor_id=request.initiator_id,
        request_id=request.request_id,
        urgency=plan.urgency.value,
        levels=[{"level": s.level, "role": s.required_role} for s in steps],
        triggering_rules=[r.rule for r in plan.triggering_rules],
    )

    if plan.auto_approve or not plan.required:
        workflow = _finish(
            draft,
            base,
            WorkflowStatus.APPROVED,
            "workflow_auto_approved" if plan.auto_approve else "approval_not_required",
            notify=False,
        )
        return draft.commit(workflow)

    workflow = replace(base, steps=_activate(draft, base, base.steps, 0))
    return draft.commit(workflow)


# =========================================================================
# Transitions
# =========================================================================


def _respond(draft: _Draft, workflow: Workflow, cmd: Respond) -> Workflow:
    _require_pending(workflow)
    step = workflow.current_step
    if step is None or step.assigned_to is None or step.assigned_to != cmd.approver_id:
        raise NotCurrentApproverError(
            workflow.workflow_id, cmd.approver_id, workflow.current_level
        )
    now = draft.now
    index = workflow.current_level - 1
    approved = cmd.decision == Decision.APPROVE
    latency = now - (step.requested_at or now)

    answered = replace(
        step,
        status=StepStatus.APPROVED if approved else StepStatus.REJECTED,
        responded_at=now,
        response_latency=latency,
        channel=cmd.actor_context.channel,
        notes=cmd.notes,
        ip_address=cmd.actor_context.ip_address,
        user_agent=cmd.actor_context.user_agent,
    )
    timing = workflow.timing
    if timing.first_response_at is None:
        timing = replace(timing, first_response_at=now)
    notifications = tuple(
        replace(n, responded=True)
        if n.recipient_id == cmd.approver_id
        and n.kind in ACTIONABLE_MESSAGE_KINDS
        and not n.responded
        else n
        for n in workflow.notifications
    )
    workflow = replace(
        workflow,
        steps=_set_step(workflow.steps, index, answered),
        timing=timing,
        notifications=notifications,
    )
    draft.audit(
        f"approval_{answered.status.value}",
        actor_id=cmd.approver_id,
        actor_context=cmd.actor_context,
        level=step.level,
        notes=cmd.notes,
        response_latency_seconds=latency.total_seconds(),
    )

    if not approved:
        return _finish(
            draft, workflow, WorkflowStatus.REJECTED, "workflow_rejected",
            actor_id=cmd.approver_id, level=step.level,
        )

    next_index = next(
        (i for i, s in enumerate(workflow.steps) if s.status == StepStatus.QUEUED),
        None,
    )
    if next_index is None:
        return _finish(
            draft, workflow, WorkflowStatus.APPROVED, "workflow_approved",
            actor_id=cmd.approver_id,
        )
    steps = _activate(draft, workflow, workflow.steps, next_index)
    return replace(workflow, steps=steps, current_level=next_index + 1)


def _delegate(draft: _Draft, workflow: Workflow, cmd: Delegate) -> Workflow:
    _require_pending(workflow)
    step = workflow.current_step
    if step is None or step.assigned_to != cmd.from_approver_id:
        raise NotCurrentApproverError(
            workflow.workflow_id, cmd.from_approver_id, workflow.current_level
        )
    if cmd.to_approver_id == cmd.from_approver_id:
        raise InvalidInputError("to_user_id", "cannot delegate to yourself")
    if cmd.to_approver_id == workflow.initiator_id:
        raise InvalidInputError("to_user_id", "cannot delegate to the initiator")

    delegated = replace(
        step,
        assigned_to=cmd.to_approver_id,
        delegatee_id=cmd.to_approver_id,
        reassignments=step.reassignments + (
            Reassignment(
                kind=StepStatus.DELEGATED,
                from_user=cmd.from_approver_id,
                to_user=cmd.to_approver_id,
                at=draft.now,
                reason=cmd.reason,
            ),
        ),
    )
    draft.audit(
        "approval_delegated",
        actor_id=cmd.from_approver_id,
        level=step.level,
        delegated_to=cmd.to_approver_id,
        reason=cmd.reason,
    )
    draft.notify(MessageKind.DELEGATED, cmd.to_approver_id)
    draft.emit(
        MessageKind.DELEGATED,
        {"level": step.level, "from": cmd.from_approver_id},
        user_ids=(cmd.to_approver_id,),
    )
    return replace(
        workflow,
        steps=_set_step(workflow.steps, workflow.current_level - 1, delegated),
    )


def _escalate(draft: _Draft, workflow: Workflow, cmd: Escalate) -> Workflow:
    _require_pending(workflow)
    if not workflow.can_escalate:
        raise EscalationLimitReachedError(
            workflow.workflow_id, workflow.escalation.max_level
        )
    now = draft.now
    step = workflow.current_step
    assert step is not None
    deadline = now + cmd.timeout
    reassigned = replace(
        step,
        assigned_to=cmd.target_user,
        requested_at=now,
        deadline=deadline,
        reassignments=step.reassignments + (
            Reassignment(
                kind=StepStatus.ESCALATED,
                from_user=step.assigned_to,
                to_user=cmd.target_user,
                at=now,
                reason=cmd.reason,
            ),
        ),
    )
    escalation_level = workflow.escalation.current_level + 1
    global_deadline = workflow.timing.global_deadline
    if global_deadline is None or global_deadline < deadline:
        global_deadline = deadline

    draft.audit(
        "workflow_escalated",
        actor_id=cmd.actor_id,
        reason=cmd.reason,
        level=step.level,
        escalation_level=escalation_level,
        from_user=step.assigned_to,
        to_user=cmd.target_user,
        target_role=cmd.target_role,
        status_path=[
            WorkflowStatus.PENDING.value,
            WorkflowStatus.ESCALATED.value,
            WorkflowStatus.PENDING.value,
        ],
    )
    if cmd.target_user is None:
        draft.audit(
            "approver_unavailable",
            severity="warning",
            level=step.level,
            required_role=cmd.target_role,
        )
    elif draft.ctx.escalation_notification:
        draft.notify(MessageKind.ESCALATED, cmd.target_user, cmd.channels)
    draft.emit(
        MessageKind.ESCALATED,
        {"level": step.level, "escalation_level": escalation_level, "reason": cmd.reason},
        user_ids=(cmd.target_user,),
        roles=(cmd.target_role,) if cmd.target_role else (),
    )
    return replace(
        workflow,
        steps=_set_step(workflow.steps, workflow.current_level - 1, reassigned),
        escalation=replace(workflow.escalation, current_level=escalation_level),
        timing=replace(workflow.timing, escalated_at=now, global_deadline=global_deadline),
    )


def is_expiry_due(workflow: Workflow, token: datetime, now: datetime) -> bool:
    """True when ``token`` is still the live deadline and it has elapsed."""
    return (
        workflow.status == WorkflowStatus.PENDING
        and workflow.timing.timeout_at is not None
        and workflow.timing.timeout_at == token
        and now >= workflow.timing.timeout_at
    )


def _expire(draft: _Draft, workflow: Workflow, cmd: Expire) -> Workflow:
    _require_pending(workflow)
    if not is_expiry_due(workflow, cmd.token, draft.now):
        raise PreconditionFailedError(
            f"Workflow {workflow.workflow_id} deadline has not elapsed"
        )
    if workflow.can_escalate:
        raise PreconditionFailedError(
            f"Workflow {workflow.workflow_id} must escalate before expiring"
        )
    index = workflow.current_level - 1
    step = workflow.steps[index]
    workflow = replace(
        workflow,
        steps=_set_step(workflow.steps, index, replace(step, status=StepStatus.EXPIRED)),
    )
    action = workflow.escalation.final_action
    if action == FinalAction.AUTO_APPROVE:
        return _finish(
            draft, workflow, WorkflowStatus.APPROVED,
            "workflow_auto_approved_on_timeout", level=step.level,
        )
    if action == FinalAction.AUTO_REJECT:
        return _finish(
            draft, workflow, WorkflowStatus.REJECTED,
            "workflow_auto_rejected_on_timeout", level=step.level,
        )
    return _finish(
        draft, workflow, WorkflowStatus.EXPIRED, "workflow_expired",
        level=step.level, final_action=action.value,
    )


def _cancel(draft: _Draft, workflow: Workflow, cmd: Cancel) -> Workflow:
    _require_pending(workflow)
    if cmd.actor_id != workflow.initiator_id and not cmd.is_admin:
        raise UnauthorisedError(cmd.actor_id, f"cancel {workflow.workflow_id}")
    return _finish(
        draft, workflow, WorkflowStatus.CANCELLED, "workflow_cancelled",
        actor_id=cmd.actor_id, reason=cmd.reason,
    )


def _remind(draft: _Draft, workflow: Workflow, cmd: Remind) -> Workflow:
    _require_pending(workflow)
    sent = workflow.timing.reminders_sent
    if cmd.n != sent + 1 or cmd.n > draft.ctx.max_reminders:
        raise ReminderLimitReachedError(workflow.workflow_id, sent, cmd.n)
    step = workflow.current_step
    assert step is not None
    draft.audit("reminder_sent", reminder_number=cmd.n, level=step.level)
    draft.notify(MessageKind.APPROVAL_REMINDER, step.assigned_to)
    draft.emit(
        MessageKind.APPROVAL_REMINDER,
        {"level": step.level, "reminder_number": cmd.n},
        user_ids=(step.assigned_to,),
    )
    return replace(
        workflow,
        timing=replace(
            workflow.timing, reminders_sent=cmd.n, last_reminder_at=draft.now
        ),
    )


def _record_delivery(draft: _Draft, workflow: Workflow, cmd: RecordDelivery) -> Workflow:
    record = workflow.notification(cmd.message_id)
    if record is None:
        raise InvalidInputError("message_id", f"unknown notification {cmd.message_id}")
    updated = replace(
        record,
        delivered=cmd.delivered,
        opened=record.opened or cmd.opened,
        provider_message_id=cmd.provider_message_id or record.provider_message_id,
        error=cmd.error,
        attempts=record.attempts + 1,
        next_attempt_at=None if cmd.delivered else cmd.next_attempt_at,
    )
    draft.audit(
        "notification_delivery_updated",
        message_id=record.message_id,
        channel=record.channel.value,
        delivered=cmd.delivered,
        attempts=updated.attempts,
        error=cmd.error,
    )
    return replace(
        workflow,
        notifications=tuple(
            updated if n.message_id == cmd.message_id else n
            for n in workflow.notifications
        ),
    )


_HANDLERS: dict[type, Callable[[_Draft, Workflow, Any], Workflow]] = {
    Respond: _respond,
    Delegate: _delegate,
    Escalate: _escalate,
    Expire: _expire,
    Cancel: _cancel,
    Remind: _remind,
    RecordDelivery: _record_delivery,
}


def apply(workflow: Workflow, command: Command, ctx: ApplyContext) -> Transition:
    """Apply ``command`` to ``workflow``; raises a BypassEngineError on refusal."""
    handler = _HANDLERS.get(type(command))
    if handler is None:
        raise InvalidInputError("command", f"unsupported command {type(command).__name__}")
    draft = _Draft(workflow, ctx)
    return draft.commit(handler(draft, workflow, command))


def next_escalation_target(workflow: Workflow) -> EscalationTarget:
    """Chain entry for the next escalation level.

    Levels past the end of the chain reuse its last entry; an empty chain
    escalates to the next role above with the default timeout.
    """
    chain = workflow.escalation.chain
    if not chain:
        return EscalationTarget()
    index = min(workflow.escalation.current_level, len(chain) - 1)
    return chain[index]

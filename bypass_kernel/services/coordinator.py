"""
WorkflowCoordinator -- the approval workflow state machine's imperative shell.

Responsibility:
    Owns every public mutation of a workflow: create, respond, delegate,
    escalate, expire, cancel, reminded and record_delivery.  Each one is
    a load -> apply (pure) -> check invariants -> compare-and-swap cycle,
    retried on StaleVersion, followed by post-commit emission of events,
    notifications and timer updates.

Architecture position:
    Kernel > Services -- imperative shell around
    ``bypass_kernel.domain.commands``.  The rule engine is injected as a
    ``Planner`` callable and the event bus / notification outbox as
    protocols, so the kernel never imports engines, config or services.

Invariants enforced:
    - Exactly one workflow per request id (store uniqueness + idempotent
      return of the existing workflow).
    - No commit ever persists a state failing ``check_invariants``.
    - Exactly one terminal transition per workflow: the status check in
      ``apply`` runs against the version the CAS is conditioned on.
    - Emissions happen only after a successful commit, and within one
      process the emissions of a workflow follow its version order.
      Across processes consumers order by the ``version`` each event
      carries.

Failure modes:
    - Every BypassEngineError raised by ``apply`` propagates unchanged.
    - StaleVersionError after ``cas_attempts`` lost races.
    - TransientUnavailableError after the retry policy is exhausted.
    - InvariantViolationError if a transition would corrupt the aggregate.
    Emission failures are logged and never fail the transition; undelivered
    notifications are picked up by the recovery loop.

Audit relevance:
    Audit entries are co-committed with the state change; a failed audit
    write fails the transition.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Mapping, Protocol

from bypass_kernel.domain.approval import (
    ActorContext,
    ApprovalPlan,
    BypassRequest,
    Decision,
    EscalationSettings,
    MessageKind,
    NotificationChannel,
    NotificationRecord,
    Transition,
    Workflow,
    WorkflowEvent,
)
from bypass_kernel.domain.clock import Clock, SystemClock, TimerRegistry
from bypass_kernel.domain.commands import (
    DEFAULT_ROUTES,
    ApplyContext,
    Cancel,
    Command,
    Delegate,
    Escalate,
    Expire,
    RecordDelivery,
    Remind,
    Respond,
    apply,
    create_workflow,
    is_expiry_due,
    next_escalation_target,
)
from bypass_kernel.domain.derivations import generate_workflow_id
from bypass_kernel.domain.invariants import check_invariants
from bypass_kernel.domain.roles import RoleHierarchy
from bypass_kernel.exceptions import (
    DuplicateRequestError,
    InvalidInputError,
    InvariantViolationError,
    StaleVersionError,
    TransientUnavailableError,
    WorkflowNotFoundError,
)
from bypass_kernel.logging_config import LogContext, get_logger
from bypass_kernel.services.approver_directory import ApproverDirectory
from bypass_kernel.services.workflow_store import WorkflowStore

logger = get_logger("services.coordinator")

Planner = Callable[[BypassRequest], ApprovalPlan]

# Striped locks serialising commit and emission per workflow
_EMISSION_STRIPES = 64


class RetryPolicy(Protocol):
    max_attempts: int

    def delay_for(self, attempt: int) -> float: ...


class EventPublisher(Protocol):
    def publish_workflow_event(self, event: WorkflowEvent) -> None: ...


class NotificationOutbox(Protocol):
    def offer(self, workflow: Workflow, records: tuple[NotificationRecord, ...]) -> int: ...


@dataclass(frozen=True)
class CoordinatorSettings:
    """Immutable coordinator configuration, built once by the runtime."""

    role_hierarchy: RoleHierarchy
    escalation: EscalationSettings = field(default_factory=EscalationSettings)
    routes: Mapping[MessageKind, tuple[NotificationChannel, ...]] = field(
        default_factory=lambda: dict(DEFAULT_ROUTES)
    )
    immediate_notification: bool = True
    escalation_notification: bool = True
    max_reminders: int = 3
    cas_attempts: int = 3
    retry: RetryPolicy | None = None


@dataclass(frozen=True)
class CreateResult:
    workflow: Workflow
    already_existed: bool = False

    @property
    def workflow_id(self) -> str:
        return self.workflow.workflow_id


class WorkflowCoordinator:
    """
    Serialises every mutation of a workflow through compare-and-swap.

    Contract:
        Public operations either commit exactly one new version of the
        workflow and return it, or raise and leave the store untouched.

    Guarantees:
        - A StaleVersionError from the store triggers a full reload and
          re-application, up to ``settings.cas_attempts`` times.
        - TransientUnavailableError from the store is retried with capped
          exponential backoff when ``settings.retry`` is set.
        - Events, notifications and timers are emitted after commit only.

    Non-goals:
        - Does NOT authenticate callers (the adapter does).
        - Does NOT deliver notifications; it hands them to the outbox.
    """

    def __init__(
        self,
        store: WorkflowStore,
        directory: ApproverDirectory,
        planner: Planner,
        settings: CoordinatorSettings,
        clock: Clock | None = None,
        events: EventPublisher | None = None,
        outbox: NotificationOutbox | None = None,
        timers: TimerRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._directory = directory
        self._planner = planner
        self._settings = settings
        self._clock = clock or SystemClock()
        self._events = events
        self._outbox = outbox
        self._timers = timers
        self._sleep = sleep
        self._emission_locks = tuple(threading.RLock() for _ in range(_EMISSION_STRIPES))

    @property
    def settings(self) -> CoordinatorSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, request: BypassRequest) -> CreateResult:
        """Create the workflow for ``request``; idempotent by request id."""
        _validate_request(request)
        with LogContext.bind(request_id=request.request_id, tenant_id=request.tenant_id):
            existing = self._with_retry(self._store.load_by_request_id, request.request_id)
            if existing is not None:
                return self._existing(existing, request)

            plan = self._planner(request)
            now = self._clock.now_utc()
            transition = create_workflow(
                request,
                plan,
                generate_workflow_id(now),
                self._settings.escalation,
                self._context(request.tenant_id, now),
            )
            self._check(transition.workflow, None)
            workflow = transition.workflow
            with self._emission_lock(workflow.workflow_id):
                try:
                    self._with_retry(self._store.cas_upsert, workflow, 0)
                except DuplicateRequestError:
                    winner = self._with_retry(
                        self._store.load_by_request_id, request.request_id
                    )
                    if winner is None:
                        raise
                    return self._existing(winner, request)

                logger.info(
                    "workflow_created",
                    extra={
                        "workflow_id": workflow.workflow_id,
                        "status": workflow.status.value,
                        "urgency": workflow.urgency.value,
                        "levels": len(plan.levels),
                        "auto_approved": workflow.auto_approved,
                        "triggering_rules": [r.rule for r in plan.triggering_rules],
                    },
                )
                self._after_commit(transition)
            return CreateResult(workflow)

    def _existing(self, workflow: Workflow, request: BypassRequest) -> CreateResult:
        if workflow.tenant_id != request.tenant_id:
            raise DuplicateRequestError(request.request_id)
        logger.info(
            "workflow_create_idempotent_hit",
            extra={"workflow_id": workflow.workflow_id, "status": workflow.status.value},
        )
        return CreateResult(workflow, already_existed=True)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def respond(
        self,
        workflow_id: str,
        approver_id: str,
        decision: Decision,
        notes: str = "",
        actor_context: ActorContext | None = None,
        tenant_id: str | None = None,
    ) -> Workflow:
        command = Respond(approver_id, decision, notes, actor_context or ActorContext())
        transition = self._mutate(
            workflow_id, lambda wf: command, tenant_id=tenant_id, actor_id=approver_id
        )
        workflow = transition.workflow
        self._directory.touch(workflow.tenant_id, approver_id, self._clock.now_utc())
        logger.info(
            "approval_recorded",
            extra={
                "workflow_id": workflow_id,
                "decision": decision.value,
                "status": workflow.status.value,
                "current_level": workflow.current_level,
            },
        )
        return workflow

    def delegate(
        self,
        workflow_id: str,
        from_approver_id: str,
        to_approver_id: str,
        reason: str = "",
        tenant_id: str | None = None,
    ) -> Workflow:
        def build(wf: Workflow) -> Command:
            self._directory.require_active(wf.tenant_id, to_approver_id)
            return Delegate(from_approver_id, to_approver_id, reason)

        transition = self._mutate(
            workflow_id, build, tenant_id=tenant_id, actor_id=from_approver_id
        )
        logger.info(
            "approval_delegated",
            extra={"workflow_id": workflow_id, "level": transition.workflow.current_level},
        )
        return transition.workflow

    def escalate(
        self,
        workflow_id: str,
        reason: str,
        actor_id: str | None = None,
        tenant_id: str | None = None,
    ) -> Workflow:
        transition = self._mutate(
            workflow_id,
            lambda wf: self._escalation_command(wf, reason, actor_id),
            tenant_id=tenant_id,
            actor_id=actor_id,
        )
        self._log_escalated(transition.workflow, reason)
        return transition.workflow

    def expire(self, workflow_id: str, token) -> Workflow | None:
        """Act on an elapsed deadline: escalate if possible, else apply the final action.

        Returns None (no-op) when ``token`` is stale or the deadline has
        not actually passed, which makes the scheduler safe to race with
        human responses.
        """
        escalated = False

        def build(wf: Workflow) -> Command | None:
            nonlocal escalated
            if not is_expiry_due(wf, token, self._clock.now_utc()):
                return None
            escalated = wf.can_escalate
            if escalated:
                return self._escalation_command(wf, "timeout", None)
            return Expire(token)

        transition = self._mutate(workflow_id, build)
        if transition is None:
            logger.debug("expiry_not_due", extra={"workflow_id": workflow_id})
            return None
        workflow = transition.workflow
        if escalated:
            self._log_escalated(workflow, "timeout")
        else:
            logger.info(
                "workflow_timed_out",
                extra={
                    "workflow_id": workflow_id,
                    "status": workflow.status.value,
                    "final_action": workflow.escalation.final_action.value,
                },
            )
        return workflow

    def cancel(
        self,
        workflow_id: str,
        actor_id: str,
        reason: str = "",
        is_admin: bool = False,
        tenant_id: str | None = None,
    ) -> Workflow:
        transition = self._mutate(
            workflow_id,
            lambda wf: Cancel(actor_id, reason, is_admin),
            tenant_id=tenant_id,
            actor_id=actor_id,
        )
        logger.info("workflow_cancelled", extra={"workflow_id": workflow_id})
        return transition.workflow

    def reminded(self, workflow_id: str, n: int) -> Workflow:
        transition = self._mutate(workflow_id, lambda wf: Remind(n))
        logger.info(
            "reminder_sent", extra={"workflow_id": workflow_id, "reminder_number": n}
        )
        return transition.workflow

    def record_delivery(
        self,
        workflow_id: str,
        message_id: str,
        delivered: bool,
        opened: bool = False,
        provider_message_id: str | None = None,
        error: str | None = None,
        next_attempt_at=None,
    ) -> Workflow:
        transition = self._mutate(
            workflow_id,
            lambda wf: RecordDelivery(
                message_id, delivered, opened, provider_message_id, error, next_attempt_at
            ),
        )
        return transition.workflow

    def get(self, workflow_id: str, tenant_id: str | None = None) -> Workflow:
        return self._load(workflow_id, tenant_id)

    # ------------------------------------------------------------------
    # Load-apply-CAS
    # ------------------------------------------------------------------

    def _mutate(
        self,
        workflow_id: str,
        build: Callable[[Workflow], Command | None],
        tenant_id: str | None = None,
        actor_id: str | None = None,
    ) -> Transition | None:
        attempts = max(self._settings.cas_attempts, 1)
        with LogContext.bind(workflow_id=workflow_id, tenant_id=tenant_id, actor_id=actor_id):
            for attempt in range(1, attempts + 1):
                current = self._load(workflow_id, tenant_id)
                command = build(current)
                if command is None:
                    return None
                transition = apply(
                    current, command, self._context(current.tenant_id, self._clock.now_utc())
                )
                self._check(transition.workflow, current)
                with self._emission_lock(workflow_id):
                    try:
                        self._with_retry(
                            self._store.cas_upsert, transition.workflow, current.version
                        )
                    except StaleVersionError:
                        logger.warning(
                            "workflow_cas_conflict",
                            extra={
                                "workflow_id": workflow_id,
                                "expected_version": current.version,
                                "attempt": attempt,
                                "command": type(command).__name__,
                            },
                        )
                        if attempt == attempts:
                            raise
                        continue
                    self._after_commit(transition)
                return transition
        raise AssertionError("unreachable")  # pragma: no cover

    def _load(self, workflow_id: str, tenant_id: str | None) -> Workflow:
        workflow = self._with_retry(self._store.load_by_id, workflow_id)
        # Another tenant's workflow is reported as missing
        if workflow is None or (tenant_id is not None and workflow.tenant_id != tenant_id):
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def _check(self, workflow: Workflow, previous: Workflow | None) -> None:
        violations = check_invariants(workflow, previous)
        if violations:
            logger.error(
                "workflow_invariant_violation",
                extra={"workflow_id": workflow.workflow_id, "violations": violations},
            )
            raise InvariantViolationError(workflow.workflow_id, violations)

    def _with_retry(self, fn, *args):
        policy = self._settings.retry
        max_attempts = policy.max_attempts if policy is not None else 1
        attempt = 1
        while True:
            try:
                return fn(*args)
            except TransientUnavailableError as exc:
                if attempt >= max_attempts:
                    logger.error(
                        "workflow_store_retries_exhausted",
                        extra={"resource": exc.resource, "attempts": attempt},
                    )
                    raise
                delay = policy.delay_for(attempt)
                logger.warning(
                    "workflow_store_retry",
                    extra={"resource": exc.resource, "attempt": attempt, "delay_seconds": delay},
                )
                self._sleep(delay)
                attempt += 1

    def _context(self, tenant_id: str, now) -> ApplyContext:
        return ApplyContext(
            now=now,
            resolve_approver=partial(self._directory.find_approver, tenant_id),
            routes=self._settings.routes,
            immediate_notification=self._settings.immediate_notification,
            escalation_notification=self._settings.escalation_notification,
            max_reminders=self._settings.max_reminders,
        )

    def _escalation_command(
        self, workflow: Workflow, reason: str, actor_id: str | None
    ) -> Escalate:
        target = next_escalation_target(workflow)
        step = workflow.current_step
        if step is None:
            raise InvalidInputError("workflow_id", "workflow has no active step")
        exclude = frozenset(
            u for u in (workflow.initiator_id, step.assigned_to) if u is not None
        )
        floor = self._assignee_rank(workflow, step.assigned_to)

        user = None
        role = target.escalate_to_role
        if target.escalate_to_user is not None:
            approver = self._directory.get(workflow.tenant_id, target.escalate_to_user)
            if (
                approver is not None
                and approver.active
                and approver.user_id not in exclude
                and self._outranks(approver.role, floor)
            ):
                user = approver.user_id
                role = role or approver.role
        if user is None:
            role = role or self._default_escalation_role(workflow, step.required_role)
            role = self._above(role, floor)
            user = self._directory.find_approver(workflow.tenant_id, role, exclude)
        return Escalate(
            reason=reason,
            target_role=role,
            target_user=user,
            timeout=target.timeout,
            channels=target.channels,
            actor_id=actor_id,
        )

    def _default_escalation_role(self, workflow: Workflow, required_role: str) -> str:
        roles = self._settings.role_hierarchy.roles
        if required_role not in self._settings.role_hierarchy:
            return roles[-1]
        index = self._settings.role_hierarchy.rank(required_role)
        return roles[min(index + workflow.escalation.current_level + 1, len(roles) - 1)]

    def _assignee_rank(self, workflow: Workflow, assignee: str | None) -> int | None:
        """Rank of the current assignee, or None when unassigned or unranked."""
        if assignee is None:
            return None
        approver = self._directory.get(workflow.tenant_id, assignee)
        hierarchy = self._settings.role_hierarchy
        if approver is None or approver.role not in hierarchy:
            return None
        return hierarchy.rank(approver.role)

    def _outranks(self, role: str, floor: int | None) -> bool:
        hierarchy = self._settings.role_hierarchy
        if floor is None:
            return True
        return role in hierarchy and hierarchy.rank(role) > floor

    def _above(self, role: str, floor: int | None) -> str:
        """``role``, raised to the first rank above ``floor`` when needed.

        At the top of the hierarchy the top role is kept; the assignee
        is excluded from the lookup, so a peer or the admin fallback
        takes the step.
        """
        if self._outranks(role, floor) or role not in self._settings.role_hierarchy:
            return role
        roles = self._settings.role_hierarchy.roles
        return roles[min(floor + 1, len(roles) - 1)]

    def _log_escalated(self, workflow: Workflow, reason: str) -> None:
        logger.info(
            "workflow_escalated",
            extra={
                "workflow_id": workflow.workflow_id,
                "escalation_level": workflow.escalation.current_level,
                "assigned_to": workflow.current_approver,
                "reason": reason,
            },
        )

    # ------------------------------------------------------------------
    # Post-commit emission
    # ------------------------------------------------------------------

    def _emission_lock(self, workflow_id: str) -> threading.RLock:
        """Lock held from a workflow's CAS until its emissions are handed off.

        A version can only be committed after its predecessor, so holding
        this across commit and emission keeps events and notifications of
        one workflow in version order within the process.
        """
        return self._emission_locks[hash(workflow_id) % len(self._emission_locks)]

    def _after_commit(self, transition: Transition) -> None:
        workflow = transition.workflow
        if self._timers is not None:
            if workflow.timing.timeout_at is not None:
                self._timers.schedule_at(workflow.timing.timeout_at, workflow.workflow_id)
            else:
                self._timers.cancel(workflow.workflow_id)

        if self._outbox is not None and transition.notifications:
            try:
                self._outbox.offer(workflow, transition.notifications)
            except Exception:
                # Records stay undelivered; the recovery loop resends them
                logger.warning(
                    "notification_enqueue_failed",
                    extra={"workflow_id": workflow.workflow_id},
                    exc_info=True,
                )

        if self._events is not None:
            for event in transition.events:
                try:
                    self._events.publish_workflow_event(event)
                except Exception:
                    logger.warning(
                        "event_publish_failed",
                        extra={"workflow_id": workflow.workflow_id, "kind": event.kind.value},
                        exc_info=True,
                    )


def _validate_request(request: BypassRequest) -> None:
    if not request.request_id:
        raise InvalidInputError("request_id", "must not be empty")
    if not request.tenant_id:
        raise InvalidInputError("tenant_id", "must not be empty")
    if not request.initiator_id:
        raise InvalidInputError("initiator_id", "must not be empty")
    if not 0 <= request.risk_score <= 100:
        raise InvalidInputError("risk_score", "must be within 0..100")
    if request.financial_impact < 0:
        raise InvalidInputError("financial_impact", "must be non-negative")

"""
Module: bypass_kernel.selectors.workflow_selector
Responsibility: Read-only queries over workflows: tenant listings with
    filters and pagination, single-workflow fetch, per-approver queues,
    the audit trail, and tenant statistics.
Architecture position: Kernel > Selectors.  Reads through the
    WorkflowStore contract only; MUST NOT mutate workflows.

Invariants enforced:
    - Tenant isolation: a workflow of another tenant is reported as
      not found, never returned.
    - DTO return convention: listings return frozen summaries.

Failure modes:
    - WorkflowNotFoundError for unknown ids (or other tenants' ids).
    - InvalidInputError for malformed pagination or windows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from bypass_kernel.domain.approval import (
    AuditEntry,
    ResponseChannel,
    Urgency,
    Workflow,
    WorkflowStatus,
)
from bypass_kernel.domain.clock import Clock, SystemClock
from bypass_kernel.exceptions import InvalidInputError, WorkflowNotFoundError
from bypass_kernel.services.workflow_store import WorkflowFilter, WorkflowStore

MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class WorkflowSummary:
    workflow_id: str
    request_id: str
    tenant_id: str
    initiator_id: str
    status: WorkflowStatus
    urgency: Urgency
    current_level: int
    total_levels: int
    current_approver: str | None
    completion_percentage: int
    time_remaining: timedelta | None
    timeout_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None

    @classmethod
    def of(cls, workflow: Workflow, now: datetime) -> WorkflowSummary:
        return cls(
            workflow_id=workflow.workflow_id,
            request_id=workflow.request_id,
            tenant_id=workflow.tenant_id,
            initiator_id=workflow.initiator_id,
            status=workflow.status,
            urgency=workflow.urgency,
            current_level=workflow.current_level,
            total_levels=len(workflow.steps),
            current_approver=workflow.current_approver,
            completion_percentage=workflow.completion_percentage,
            time_remaining=workflow.time_remaining(now),
            timeout_at=workflow.timing.timeout_at,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
        )


@dataclass(frozen=True)
class Page:
    items: tuple[WorkflowSummary, ...]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


@dataclass(frozen=True)
class AggregateStats:
    tenant_id: str
    window_start: datetime | None
    total: int
    by_status: dict[str, int] = field(default_factory=dict)
    auto_approved: int = 0
    escalated: int = 0
    approval_rate: float | None = None
    average_response_time: timedelta | None = None
    average_total_duration: timedelta | None = None


def _mean(values: list[timedelta]) -> timedelta | None:
    if not values:
        return None
    return sum(values, timedelta(0)) / len(values)


class WorkflowSelector:
    """
    Read-side access to workflows.

    Contract:
        Every method takes the caller's tenant and only ever returns data
        of that tenant.
    """

    def __init__(self, store: WorkflowStore, clock: Clock | None = None):
        self._store = store
        self._clock = clock or SystemClock()

    def get(self, workflow_id: str, tenant_id: str) -> Workflow:
        workflow = self._store.load_by_id(workflow_id)
        if workflow is None or workflow.tenant_id != tenant_id:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def list(
        self,
        tenant_id: str,
        filter: WorkflowFilter | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Page:
        """Newest first, with the total count of matching workflows."""
        if offset < 0:
            raise InvalidInputError("offset", "must be >= 0")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidInputError("limit", f"must be within 1..{MAX_PAGE_SIZE}")
        if (
            filter is not None
            and filter.created_from is not None
            and filter.created_to is not None
            and filter.created_from > filter.created_to
        ):
            raise InvalidInputError("created_from", "must not be after created_to")
        items, total = self._store.list_workflows(tenant_id, filter, offset, limit)
        now = self._clock.now_utc()
        return Page(
            items=tuple(WorkflowSummary.of(w, now) for w in items),
            total=total,
            offset=offset,
            limit=limit,
        )

    def pending_for_approver(self, tenant_id: str, approver_id: str) -> list[WorkflowSummary]:
        """Pending workflows whose active step is assigned to ``approver_id``."""
        now = self._clock.now_utc()
        items = self._store.list_pending(tenant_id, WorkflowFilter(assignee_id=approver_id))
        summaries = [WorkflowSummary.of(w, now) for w in items]
        # Most urgent deadline first
        summaries.sort(key=lambda s: (s.timeout_at is None, s.timeout_at or now))
        return summaries

    def audit(self, workflow_id: str, tenant_id: str) -> list[AuditEntry]:
        self.get(workflow_id, tenant_id)
        return self._store.list_audit(workflow_id)

    def stats(self, tenant_id: str, window: timedelta | None = None) -> AggregateStats:
        if window is not None and window <= timedelta(0):
            raise InvalidInputError("window", "must be positive")
        since = self._clock.now_utc() - window if window is not None else None
        workflows = self._store.list_for_tenant(tenant_id, since)

        by_status = {s.value: 0 for s in WorkflowStatus if s != WorkflowStatus.ESCALATED}
        latencies: list[timedelta] = []
        durations: list[timedelta] = []
        for wf in workflows:
            by_status[wf.status.value] += 1
            latencies.extend(
                s.response_latency
                for s in wf.steps
                if s.response_latency is not None and s.channel != ResponseChannel.AUTOMATIC
            )
            if wf.timing.total_duration is not None:
                durations.append(wf.timing.total_duration)

        approved = by_status[WorkflowStatus.APPROVED.value]
        decided = approved + by_status[WorkflowStatus.REJECTED.value]
        return AggregateStats(
            tenant_id=tenant_id,
            window_start=since,
            total=len(workflows),
            by_status=by_status,
            auto_approved=sum(1 for w in workflows if w.auto_approved),
            escalated=sum(1 for w in workflows if w.escalation.current_level > 0),
            approval_rate=round(approved / decided, 4) if decided else None,
            average_response_time=_mean(latencies),
            average_total_duration=_mean(durations),
        )

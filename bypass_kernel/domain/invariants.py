"""
Workflow invariant checks, run before every compare-and-swap.

Responsibility:
    ``check_invariants(previous, current)`` lists every way ``current`` is
    inconsistent on its own or as a successor of ``previous``.  The
    coordinator refuses the commit (InvariantViolationError) when the list
    is non-empty; property tests call it on every committed state.

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from __future__ import annotations

from datetime import timedelta

from bypass_kernel.domain.approval import (
    STEP_TRANSITIONS,
    WORKFLOW_TRANSITIONS,
    StepStatus,
    Workflow,
    WorkflowStatus,
)
from bypass_kernel.domain.derivations import derive_timeout_at

_NOTIFICATION_AUDIT_SKEW = timedelta(seconds=1)


def check_invariants(current: Workflow, previous: Workflow | None = None) -> list[str]:
    violations: list[str] = []
    steps = current.steps
    pending = [s for s in steps if s.status == StepStatus.PENDING]

    if current.status == WorkflowStatus.ESCALATED:
        violations.append("escalated is a transient marker and cannot be persisted")

    if current.status == WorkflowStatus.PENDING:
        if not 1 <= current.current_level <= len(steps):
            violations.append(
                f"current_level {current.current_level} outside 1..{len(steps)}"
            )
        elif steps[current.current_level - 1].status != StepStatus.PENDING:
            violations.append(
                f"active step {current.current_level} is "
                f"{steps[current.current_level - 1].status.value}, not pending"
            )
        expected = derive_timeout_at(steps, current.timing.global_deadline)
        if current.timing.timeout_at != expected:
            violations.append(
                f"timeout_at {current.timing.timeout_at} is not the earliest "
                f"active deadline {expected}"
            )

    if current.status in (
        WorkflowStatus.APPROVED,
        WorkflowStatus.REJECTED,
        WorkflowStatus.EXPIRED,
    ):
        if current.timing.completed_at is None:
            violations.append(f"{current.status.value} workflow has no completed_at")
        if pending:
            violations.append(f"{current.status.value} workflow has a pending step")

    if len(pending) > 1:
        violations.append(f"{len(pending)} steps pending at once")

    levels = [s.level for s in steps]
    if levels != list(range(1, len(steps) + 1)):
        violations.append(f"step levels {levels} are not contiguous from 1")

    audit_times = [a.timestamp for a in current.audit]
    for record in current.notifications:
        if not any(abs(record.sent_at - t) <= _NOTIFICATION_AUDIT_SKEW for t in audit_times):
            violations.append(f"notification {record.message_id} has no matching audit entry")

    if previous is not None:
        violations.extend(_check_succession(previous, current))

    return violations


def _check_succession(previous: Workflow, current: Workflow) -> list[str]:
    violations: list[str] = []
    if current.version <= previous.version:
        violations.append(
            f"version {current.version} does not increase past {previous.version}"
        )
    if current.request_id != previous.request_id:
        violations.append("request_id changed")
    if current.status != previous.status and current.status not in WORKFLOW_TRANSITIONS[previous.status]:
        violations.append(
            f"illegal status transition {previous.status.value} -> {current.status.value}"
        )
    if len(current.steps) != len(previous.steps):
        violations.append("steps were added or removed")
    else:
        for old, new in zip(previous.steps, current.steps):
            if old.status != new.status and new.status not in STEP_TRANSITIONS[old.status]:
                violations.append(
                    f"step {old.level} moved {old.status.value} -> {new.status.value}"
                )
    if current.audit[: len(previous.audit)] != previous.audit:
        violations.append("audit history was rewritten")
    new_entries = current.audit[len(previous.audit):]
    if not new_entries:
        violations.append("commit carries no audit entry")
    if any(a.sequence != current.version for a in new_entries):
        violations.append("audit sequence does not match the committed version")
    previous_ids = [n.message_id for n in previous.notifications]
    if [n.message_id for n in current.notifications[: len(previous_ids)]] != previous_ids:
        violations.append("notification history was rewritten")
    return violations

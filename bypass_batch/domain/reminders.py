"""
Reminder policy -- pure evaluation of whether a workflow is due a reminder.

Contract:
    ``next_reminder_number`` returns the number the next reminder must
    carry, or None when no reminder is due at ``now``.

Invariants enforced:
    - A reminder is only sent while the deadline is still ahead of ``now``
      and within ``interval`` of it.
    - At most ``max_reminders`` reminders per workflow, at least
      ``interval`` apart.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from bypass_kernel.domain.approval import Workflow, WorkflowStatus


def next_reminder_number(
    workflow: Workflow,
    now: datetime,
    interval: timedelta,
    max_reminders: int,
) -> int | None:
    timing = workflow.timing
    if workflow.status != WorkflowStatus.PENDING or timing.timeout_at is None:
        return None
    if workflow.current_approver is None:
        return None
    if timing.reminders_sent >= max_reminders:
        return None
    if not now < timing.timeout_at <= now + interval:
        return None
    if timing.last_reminder_at is not None and now - timing.last_reminder_at < interval:
        return None
    return timing.reminders_sent + 1

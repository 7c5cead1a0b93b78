"""
Derived workflow fields, computed in one place.

Responsibility:
    Pure functions for every field of the workflow that is a function of
    other fields: the workflow identifier, the clock-derived request
    context, analytics, the active deadline, and completion timing.  The
    coordinator calls them immediately before every compare-and-swap so
    that each persisted snapshot is self-consistent.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - ``timing.timeout_at`` is the earliest of the active step deadline and
      the global deadline (``derive_timeout_at``).
    - ``total_duration`` and ``average_response_time`` are set only once
      the workflow is terminal.
"""

from __future__ import annotations

import secrets
from dataclasses import replace
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from bypass_kernel.domain.approval import (
    Analytics,
    Complexity,
    RequestContext,
    Shift,
    StepStatus,
    Timing,
    Urgency,
    Workflow,
    WorkflowStep,
)

WEEKDAYS = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


def generate_workflow_id(now: datetime, token: str | None = None) -> str:
    """``APPROVAL_<epoch millis>_<8 upper hex>``."""
    millis = int(now.timestamp() * 1000)
    suffix = (token or secrets.token_hex(4)).upper()
    return f"APPROVAL_{millis}_{suffix}"


def shift_for_hour(hour: int) -> Shift:
    if 6 <= hour < 12:
        return Shift.MORNING
    if 12 <= hour < 18:
        return Shift.AFTERNOON
    if 18 <= hour < 22:
        return Shift.EVENING
    return Shift.NIGHT


def derive_context(
    now: datetime,
    timezone_name: str,
    business_start_hour: int = 8,
    business_end_hour: int = 18,
) -> RequestContext:
    """Context of ``now`` in the tenant's local time."""
    local = now.astimezone(ZoneInfo(timezone_name))
    weekday = WEEKDAYS[local.weekday()]
    business_hours = (
        business_start_hour <= local.hour < business_end_hour
        and weekday not in ("Saturday", "Sunday")
    )
    return RequestContext(
        weekday=weekday,
        shift=shift_for_hour(local.hour),
        business_hours=business_hours,
    )


def derive_complexity(level_count: int, urgency: Urgency) -> Complexity:
    if urgency in (Urgency.CRITICAL, Urgency.EMERGENCY):
        return Complexity.CRITICAL
    if level_count >= 3:
        return Complexity.COMPLEX
    if level_count == 2:
        return Complexity.MODERATE
    return Complexity.SIMPLE


def derive_analytics(
    context: RequestContext,
    urgency: Urgency,
    steps: tuple[WorkflowStep, ...],
) -> Analytics:
    return Analytics(
        weekday=context.weekday,
        shift=context.shift,
        business_hours=context.business_hours,
        urgency=urgency,
        complexity=derive_complexity(len(steps), urgency),
        approval_path=">".join(s.required_role for s in steps),
    )


def derive_timeout_at(
    steps: tuple[WorkflowStep, ...],
    global_deadline: datetime | None,
) -> datetime | None:
    candidates = [
        s.deadline
        for s in steps
        if s.status == StepStatus.PENDING and s.deadline is not None
    ]
    if global_deadline is not None:
        candidates.append(global_deadline)
    return min(candidates) if candidates else None


def derive_completion(timing: Timing, steps: tuple[WorkflowStep, ...]) -> Timing:
    """Fill total duration and average response time of a finished workflow."""
    if timing.completed_at is None:
        return timing
    latencies = [s.response_latency for s in steps if s.response_latency is not None]
    average = (
        sum(latencies, timedelta(0)) / len(latencies) if latencies else None
    )
    return replace(
        timing,
        total_duration=timing.completed_at - timing.initiated_at,
        average_response_time=average,
    )


def derive(workflow: Workflow) -> Workflow:
    """Recompute every derived field of ``workflow``."""
    timing = replace(
        workflow.timing,
        timeout_at=(
            derive_timeout_at(workflow.steps, workflow.timing.global_deadline)
            if not workflow.is_terminal
            else None
        ),
    )
    timing = derive_completion(timing, workflow.steps)
    analytics = replace(
        workflow.analytics,
        complexity=derive_complexity(len(workflow.steps), workflow.urgency),
        approval_path=">".join(s.required_role for s in workflow.steps),
    )
    return replace(workflow, timing=timing, analytics=analytics)

"""
Pure domain layer.

Value objects, state machines and the pure transition functions of the
approval workflow, with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Wall-clock time (a Clock is always injected)
- I/O

All domain objects are immutable and deterministic.
"""

from bypass_kernel.domain.approval import (
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
    PlanLevel,
    ReasonCategory,
    RequestContext,
    ResponseChannel,
    SecurityFlag,
    Severity,
    StepStatus,
    Transition,
    TriggeredRule,
    Urgency,
    UrgencyHint,
    Workflow,
    WorkflowEvent,
    WorkflowStatus,
    WorkflowStep,
)
from bypass_kernel.domain.clock import Clock, DeterministicClock, SystemClock, TimerRegistry
from bypass_kernel.domain.roles import RoleHierarchy

__all__ = [
    "ActorContext",
    "ApprovalPlan",
    "AuditEntry",
    "BypassRequest",
    "Clock",
    "Decision",
    "DeterministicClock",
    "EscalationSettings",
    "EscalationTarget",
    "FinalAction",
    "MessageKind",
    "NotificationChannel",
    "NotificationRecord",
    "PlanLevel",
    "ReasonCategory",
    "RequestContext",
    "ResponseChannel",
    "RoleHierarchy",
    "SecurityFlag",
    "Severity",
    "StepStatus",
    "SystemClock",
    "TimerRegistry",
    "Transition",
    "TriggeredRule",
    "Urgency",
    "UrgencyHint",
    "Workflow",
    "WorkflowEvent",
    "WorkflowStatus",
    "WorkflowStep",
]

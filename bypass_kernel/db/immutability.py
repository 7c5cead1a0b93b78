"""
ORM-level immutability enforcement for the workflow audit trail.

Audit entries are append-only: once a ``WorkflowAuditModel`` row is
flushed, any UPDATE or ORM DELETE through a session is refused before the
SQL reaches the database.

    session.flush()
         |
         v
    [before_update] --> _check_audit_entry_immutability() --> ImmutabilityViolationError
    [before_delete] --> _check_audit_entry_delete() --------^

The retention sweeper removes expired history with a Core DELETE
statement, which bypasses mapper events by construction.
"""

from sqlalchemy import event

from bypass_kernel.exceptions import ImmutabilityViolationError
from bypass_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _entity_id(target) -> str:
    return f"{target.workflow_id}#{target.sequence}.{target.position}"


def _check_audit_entry_immutability(mapper, connection, target):
    """Prevent any updates to workflow audit rows."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "WorkflowAudit",
            "entity_id": _entity_id(target),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="WorkflowAudit",
        entity_id=_entity_id(target),
        reason="Audit entries are immutable and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    """Prevent ORM deletion of workflow audit rows."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "WorkflowAudit",
            "entity_id": _entity_id(target),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="WorkflowAudit",
        entity_id=_entity_id(target),
        reason="Audit entries cannot be deleted",
    )


def register_immutability_listeners() -> None:
    """Register the audit listeners; safe to call more than once."""
    from bypass_kernel.models.workflow import WorkflowAuditModel

    for name, fn in (
        ("before_update", _check_audit_entry_immutability),
        ("before_delete", _check_audit_entry_delete),
    ):
        if not event.contains(WorkflowAuditModel, name, fn):
            event.listen(WorkflowAuditModel, name, fn)

"""ORM models for the bypass approval kernel."""

from bypass_kernel.models.workflow import (
    WorkflowAuditModel,
    WorkflowModel,
    workflow_from_document,
    workflow_to_document,
)

__all__ = [
    "WorkflowAuditModel",
    "WorkflowModel",
    "workflow_from_document",
    "workflow_to_document",
]

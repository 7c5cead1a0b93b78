"""Kernel services: workflow store, approver directory, coordinator."""

from bypass_kernel.services.approver_directory import (
    Approver,
    ApproverDirectory,
    InMemoryApproverDirectory,
)
from bypass_kernel.services.coordinator import (
    CoordinatorSettings,
    CreateResult,
    WorkflowCoordinator,
)
from bypass_kernel.services.workflow_store import (
    InMemoryWorkflowStore,
    SqlWorkflowStore,
    WorkflowFilter,
    WorkflowStore,
)

__all__ = [
    "Approver",
    "ApproverDirectory",
    "CoordinatorSettings",
    "CreateResult",
    "InMemoryApproverDirectory",
    "InMemoryWorkflowStore",
    "SqlWorkflowStore",
    "WorkflowCoordinator",
    "WorkflowFilter",
    "WorkflowStore",
]

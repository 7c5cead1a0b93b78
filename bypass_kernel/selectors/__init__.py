"""Read-only query selectors."""

from bypass_kernel.selectors.workflow_selector import (
    AggregateStats,
    Page,
    WorkflowSelector,
    WorkflowSummary,
)

__all__ = ["AggregateStats", "Page", "WorkflowSelector", "WorkflowSummary"]

"""
Module: bypass_engines
Responsibility:
    Package entrypoint re-exporting the pure approval rule engine.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import bypass_kernel/domain/.  MUST NOT import
    bypass_services or bypass_batch.

Invariants enforced:
    - Purity: engines never call ``datetime.now()``; time comes from an
      injected Clock.
    - Decimal-only arithmetic for monetary thresholds.

Usage:
    from bypass_engines import plan
    approval_plan = plan(request, policy, clock, timezone_name="Asia/Kolkata")
"""

from bypass_engines.approval_plan import (
    build_levels,
    collect_triggered_rules,
    determine_urgency,
    plan,
    qualifies_for_auto_approval,
)
from bypass_engines.tracer import traced_engine

__all__ = [
    "build_levels",
    "collect_triggered_rules",
    "determine_urgency",
    "plan",
    "qualifies_for_auto_approval",
    "traced_engine",
]

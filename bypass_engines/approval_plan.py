"""
bypass_engines.approval_plan -- Pure approval rule engine.

Responsibility:
    Given a ``BypassRequest`` and the active ``ApprovalPolicy``, decide
    whether approval is needed at all, which roles must approve in which
    order and within which timeouts, how urgent the workflow is, and
    whether the request is auto-approved.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import bypass_kernel/domain/ types.  The clock is read once,
    and only when the request does not carry a pinned context.

Invariants enforced:
    - Determinism: identical request, policy and clock reading always
      produce an identical plan.
    - ``required`` is False exactly when no level is produced;
      ``auto_approve`` implies not ``required``.
    - Levels are deduplicated by role (shortest timeout wins), sorted by
      role rank ascending, and numbered contiguously from 1.

Failure modes:
    - None at runtime: ``plan`` is total over well-formed inputs.  A
      malformed policy is rejected by ``bypass_config`` at startup.
"""

from __future__ import annotations

from datetime import timedelta

from bypass_engines.tracer import traced_engine
from bypass_kernel.domain.approval import (
    ApprovalPlan,
    BypassRequest,
    PlanLevel,
    RequestContext,
    Severity,
    TriggeredRule,
    Urgency,
    UrgencyHint,
)
from bypass_kernel.domain.clock import Clock
from bypass_kernel.domain.derivations import derive_context
from bypass_kernel.domain.policy import (
    ApprovalPolicy,
    AutoApprovalPolicy,
    RuleTier,
)
from bypass_kernel.domain.roles import RoleHierarchy

ENGINE_NAME = "approval_plan"
ENGINE_VERSION = "1.0"


def qualifies_for_auto_approval(
    request: BypassRequest,
    policy: AutoApprovalPolicy,
) -> bool:
    """Low risk, low value and no critical security flag."""
    has_critical = any(f.severity == Severity.CRITICAL for f in request.security_flags)
    return (
        request.risk_score < policy.max_risk
        and request.financial_impact < policy.max_financial
        and not has_critical
    )


def collect_triggered_rules(
    request: BypassRequest,
    policy: ApprovalPolicy,
    context: RequestContext,
) -> list[tuple[TriggeredRule, RuleTier]]:
    """Every rule that fires for ``request``, ordered by priority (1 first)."""
    fired: list[tuple[TriggeredRule, RuleTier]] = []

    def fire(rule: str, tier: RuleTier, threshold: object, actual: object) -> None:
        fired.append((
            TriggeredRule(
                rule=rule,
                priority=tier.priority,
                threshold=str(threshold),
                actual_value=str(actual),
                roles=tier.roles,
            ),
            tier,
        ))

    risk = policy.risk_score
    if request.risk_score >= risk.critical.threshold:
        fire("critical_risk_score", risk.critical, risk.critical.threshold, request.risk_score)
    elif request.risk_score >= risk.high.threshold:
        fire("high_risk_score", risk.high, risk.high.threshold, request.risk_score)

    money = policy.financial_impact
    amount = request.financial_impact
    for name, tier in (
        ("critical_financial_impact", money.critical),
        ("high_financial_impact", money.high),
        ("medium_financial_impact", money.medium),
    ):
        if amount >= tier.threshold:
            fire(name, tier, tier.threshold, amount)
            break

    category = request.reason_category.value
    category_tier = policy.reason_category.get(category)
    if category_tier is not None:
        fire("reason_category_requirement", category_tier, category, category)

    timing = policy.timing
    if context.is_after_hours:
        fire("after_hours_operation", timing.after_hours, "business_hours", "after_hours")
    if context.is_weekend:
        fire("weekend_operation", timing.weekend, "business_hours", context.weekday)
    if context.is_night:
        fire("night_operation", timing.night, "shift", context.shift.value)

    flags = policy.security_flags
    critical_count = sum(1 for f in request.security_flags if f.severity == Severity.CRITICAL)
    warning_count = sum(1 for f in request.security_flags if f.severity == Severity.WARNING)
    if critical_count > 0:
        fire("critical_security_flags", flags.critical, 1, critical_count)
    if warning_count >= flags.multiple_warnings.threshold:
        fire(
            "multiple_security_warnings",
            flags.multiple_warnings,
            flags.multiple_warnings.threshold,
            warning_count,
        )

    fired.sort(key=lambda item: item[0].priority)
    return fired


def build_levels(
    tiers: list[RuleTier],
    hierarchy: RoleHierarchy,
) -> tuple[PlanLevel, ...]:
    """Deduplicate roles, sort by rank, number from 1."""
    timeouts: dict[str, timedelta] = {}
    for tier in tiers:
        for requirement in tier.levels:
            current = timeouts.get(requirement.role)
            if current is None or requirement.timeout < current:
                timeouts[requirement.role] = requirement.timeout
    ordered = sorted(timeouts, key=hierarchy.sort_key)
    return tuple(
        PlanLevel(level=i, role=role, timeout=timeouts[role])
        for i, role in enumerate(ordered, start=1)
    )


def determine_urgency(hint: UrgencyHint, rules: list[TriggeredRule]) -> Urgency:
    top_priority = min((r.priority for r in rules), default=None)
    if hint == UrgencyHint.CRITICAL and top_priority == 1:
        return Urgency.EMERGENCY
    if hint == UrgencyHint.CRITICAL or top_priority == 1:
        return Urgency.CRITICAL
    if hint == UrgencyHint.HIGH or top_priority == 2:
        return Urgency.URGENT
    return Urgency.NORMAL


@traced_engine(ENGINE_NAME, ENGINE_VERSION, fingerprint_fields=("request", "timezone_name"))
def plan(
    request: BypassRequest,
    policy: ApprovalPolicy,
    clock: Clock,
    timezone_name: str = "UTC",
) -> ApprovalPlan:
    """Compute the approval plan for ``request``.

    Args:
        request: The bypass being submitted.
        policy: The active approval policy.
        clock: Source of "now" when the request carries no context.
        timezone_name: IANA timezone of the request's tenant.

    Returns:
        ApprovalPlan; auto-approved plans carry no levels and no rules.
    """
    context = request.context or derive_context(
        clock.now(),
        timezone_name,
        policy.business_hours.start_hour,
        policy.business_hours.end_hour,
    )

    if qualifies_for_auto_approval(request, policy.auto_approval):
        return ApprovalPlan(
            required=False,
            levels=(),
            urgency=Urgency.NORMAL,
            global_timeout=policy.timeouts.default,
            auto_approve=True,
            triggering_rules=(),
            context=context,
        )

    fired = collect_triggered_rules(request, policy, context)
    rules = [rule for rule, _ in fired]
    levels = build_levels([tier for _, tier in fired], policy.role_hierarchy)
    urgency = determine_urgency(request.urgency_hint, rules)

    return ApprovalPlan(
        required=bool(levels),
        levels=levels,
        urgency=urgency,
        global_timeout=policy.timeouts.for_urgency(urgency),
        auto_approve=False,
        triggering_rules=tuple(rules),
        context=context,
    )

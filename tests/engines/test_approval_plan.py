"""
Tests for the approval rule engine (bypass_engines/approval_plan.py).

Covers auto-approval, every rule family, level deduplication and
ordering, urgency resolution, tenant-local timing and determinism.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from bypass_engines.approval_plan import (
    build_levels,
    determine_urgency,
    plan,
    qualifies_for_auto_approval,
)
from bypass_kernel.domain.approval import (
    BypassRequest,
    ReasonCategory,
    RequestContext,
    SecurityFlag,
    Severity,
    Shift,
    TriggeredRule,
    Urgency,
    UrgencyHint,
)
from bypass_kernel.domain.clock import DeterministicClock
from bypass_kernel.domain.policy import LevelRequirement, RuleTier

MONDAY_NOON = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _request(
    risk_score: int = 30,
    financial_impact: str = "0",
    reason_category: ReasonCategory = ReasonCategory.SYSTEM_FAILURE,
    urgency_hint: UrgencyHint = UrgencyHint.NORMAL,
    security_flags: tuple = (),
    context: RequestContext | None = None,
) -> BypassRequest:
    return BypassRequest(
        request_id="req-1",
        tenant_id="hotel-1",
        initiator_id="front-desk-1",
        reason_category=reason_category,
        financial_impact=Decimal(financial_impact),
        risk_score=risk_score,
        urgency_hint=urgency_hint,
        security_flags=security_flags,
        context=context,
    )


def _plan(policy, request, at: datetime = MONDAY_NOON, timezone_name: str = "UTC"):
    return plan(request, policy, DeterministicClock(at), timezone_name=timezone_name)


def _roles(result) -> list[tuple[str, int]]:
    return [(lvl.role, int(lvl.timeout.total_seconds() // 60)) for lvl in result.levels]


@pytest.fixture
def policy(engine_config):
    return engine_config.approval_policy


# =============================================================================
# Auto-approval
# =============================================================================


class TestAutoApproval:
    """Low risk and low value requests skip human approval."""

    def test_low_risk_low_value_is_auto_approved(self, policy):
        result = _plan(policy, _request(risk_score=15, financial_impact="50",
                                        reason_category=ReasonCategory.OTHER))

        assert result.auto_approve is True
        assert result.required is False
        assert result.levels == ()
        assert result.triggering_rules == ()
        assert result.urgency == Urgency.NORMAL

    def test_limits_are_exclusive(self, policy):
        assert not _plan(policy, _request(risk_score=20, financial_impact="50")).auto_approve
        assert not _plan(policy, _request(risk_score=10, financial_impact="100")).auto_approve
        assert _plan(policy, _request(risk_score=19, financial_impact="99.99")).auto_approve

    def test_critical_flag_blocks_auto_approval(self, policy):
        flags = (SecurityFlag("card_skimming", Severity.CRITICAL),)
        result = _plan(policy, _request(risk_score=5, financial_impact="10", security_flags=flags))

        assert result.auto_approve is False
        assert result.required is True
        assert [r.rule for r in result.triggering_rules] == ["critical_security_flags"]
        assert _roles(result) == [("manager", 30), ("director", 30)]
        assert result.urgency == Urgency.CRITICAL

    def test_warning_flags_do_not_block_auto_approval(self, policy):
        flags = (SecurityFlag("unusual_hour", Severity.WARNING),)
        result = qualifies_for_auto_approval(
            _request(risk_score=5, financial_impact="10", security_flags=flags),
            policy.auto_approval,
        )
        assert result is True

    def test_no_rule_fired_means_not_required(self, policy):
        result = _plan(policy, _request(risk_score=30, financial_impact="500"))

        assert result.required is False
        assert result.auto_approve is False
        assert result.levels == ()


# =============================================================================
# Rule families
# =============================================================================


class TestRuleFamilies:
    """Each rule family contributes its configured levels."""

    def test_high_financial_impact(self, policy):
        result = _plan(policy, _request(financial_impact="6000"))

        assert _roles(result) == [("manager", 60), ("director", 30)]
        assert [r.rule for r in result.triggering_rules] == ["high_financial_impact"]
        assert result.urgency == Urgency.URGENT
        assert result.global_timeout == timedelta(minutes=30)

    def test_critical_financial_impact_requires_owner(self, policy):
        result = _plan(policy, _request(financial_impact="10000"))

        assert _roles(result) == [("manager", 30), ("director", 30), ("owner", 30)]
        assert result.urgency == Urgency.CRITICAL
        assert result.global_timeout == timedelta(minutes=15)

    def test_only_highest_financial_tier_fires(self, policy):
        result = _plan(policy, _request(financial_impact="25000"))
        assert [r.rule for r in result.triggering_rules] == ["critical_financial_impact"]

    def test_medium_financial_impact_is_normal_urgency(self, policy):
        result = _plan(policy, _request(financial_impact="1000"))

        assert _roles(result) == [("manager", 90)]
        assert result.urgency == Urgency.NORMAL
        assert result.global_timeout == timedelta(minutes=60)

    def test_critical_risk_score(self, policy):
        result = _plan(policy, _request(risk_score=85))

        assert [r.rule for r in result.triggering_rules] == ["critical_risk_score"]
        assert result.triggering_rules[0].threshold == "80"
        assert result.triggering_rules[0].actual_value == "85"
        assert result.urgency == Urgency.CRITICAL

    def test_high_risk_score(self, policy):
        result = _plan(policy, _request(risk_score=60))

        assert [r.rule for r in result.triggering_rules] == ["high_risk_score"]
        assert _roles(result) == [("manager", 60)]

    def test_reason_category_requirement(self, policy):
        result = _plan(policy, _request(reason_category=ReasonCategory.COMPLIANCE_REQUIREMENT))

        assert [r.rule for r in result.triggering_rules] == ["reason_category_requirement"]
        assert _roles(result) == [("manager", 60)]

    def test_multiple_security_warnings(self, policy):
        flags = tuple(SecurityFlag(f"w{i}", Severity.WARNING) for i in range(3))
        result = _plan(policy, _request(security_flags=flags))

        assert [r.rule for r in result.triggering_rules] == ["multiple_security_warnings"]
        assert result.urgency == Urgency.URGENT

    def test_two_warnings_are_not_enough(self, policy):
        flags = tuple(SecurityFlag(f"w{i}", Severity.WARNING) for i in range(2))
        result = _plan(policy, _request(security_flags=flags))
        assert result.required is False


# =============================================================================
# Timing rules
# =============================================================================


class TestTimingRules:
    """Weekend, after-hours and night rules use the tenant's local time."""

    def test_weekend_from_pinned_context(self, policy):
        context = RequestContext(weekday="Saturday", shift=Shift.AFTERNOON, business_hours=False)
        result = _plan(policy, _request(context=context))

        assert [r.rule for r in result.triggering_rules] == ["weekend_operation"]
        assert _roles(result) == [("manager", 120)]
        assert result.context == context

    def test_night_on_a_weekday(self, policy):
        night = datetime(2024, 1, 1, 23, 30, tzinfo=timezone.utc)
        result = _plan(policy, _request(), at=night)

        rules = {r.rule for r in result.triggering_rules}
        assert rules == {"after_hours_operation", "night_operation"}
        assert _roles(result) == [("manager", 120), ("director", 120)]
        assert result.context.shift == Shift.NIGHT

    def test_same_instant_differs_by_tenant_timezone(self, policy):
        # 12:00 UTC is 17:30 in Kolkata (open) and 07:00 in New York (closed)
        kolkata = _plan(policy, _request(), timezone_name="Asia/Kolkata")
        new_york = _plan(policy, _request(), timezone_name="America/New_York")

        assert kolkata.required is False
        assert kolkata.context.business_hours is True
        assert [r.rule for r in new_york.triggering_rules] == ["after_hours_operation"]
        assert new_york.context.shift == Shift.MORNING


# =============================================================================
# Levels and urgency
# =============================================================================


class TestLevelsAndUrgency:
    """Deduplication, ordering and urgency resolution."""

    def test_roles_deduplicated_with_shortest_timeout(self, policy):
        result = _plan(policy, _request(risk_score=85, financial_impact="6000"))

        assert _roles(result) == [("manager", 30), ("director", 30)]

    def test_levels_sorted_by_rank_and_numbered(self, policy):
        result = _plan(
            policy, _request(financial_impact="6000", reason_category=ReasonCategory.OTHER)
        )

        assert _roles(result) == [("manager", 60), ("supervisor", 60), ("director", 30)]
        assert [lvl.level for lvl in result.levels] == [1, 2, 3]

    def test_rules_ordered_by_priority(self, policy):
        result = _plan(
            policy,
            _request(risk_score=85, financial_impact="1000"),
        )
        priorities = [r.priority for r in result.triggering_rules]
        assert priorities == sorted(priorities)

    def test_build_levels_sorts_by_rank(self, role_hierarchy):
        tiers = [
            RuleTier(priority=2, levels=(LevelRequirement("director", timedelta(minutes=30)),)),
            RuleTier(priority=3, levels=(LevelRequirement("manager", timedelta(minutes=90)),)),
        ]
        levels = build_levels(tiers, role_hierarchy)
        assert [lvl.role for lvl in levels] == ["manager", "director"]

    @pytest.mark.parametrize(
        "hint,priorities,expected",
        [
            (UrgencyHint.NORMAL, [], Urgency.NORMAL),
            (UrgencyHint.NORMAL, [3], Urgency.NORMAL),
            (UrgencyHint.NORMAL, [2, 3], Urgency.URGENT),
            (UrgencyHint.HIGH, [3], Urgency.URGENT),
            (UrgencyHint.NORMAL, [1], Urgency.CRITICAL),
            (UrgencyHint.CRITICAL, [2], Urgency.CRITICAL),
            (UrgencyHint.CRITICAL, [1, 2], Urgency.EMERGENCY),
        ],
    )
    def test_determine_urgency(self, hint, priorities, expected):
        rules = [TriggeredRule(f"r{p}", p, "x", "y") for p in priorities]
        assert determine_urgency(hint, rules) == expected

    def test_emergency_global_timeout(self, policy):
        result = _plan(policy, _request(risk_score=90, urgency_hint=UrgencyHint.CRITICAL))

        assert result.urgency == Urgency.EMERGENCY
        assert result.global_timeout == timedelta(minutes=5)


# =============================================================================
# Tracing
# =============================================================================


class TestPlanTracing:

    def test_engine_trace_emitted(self, policy, captured_logs):
        _plan(policy, _request(financial_impact="6000"))

        traces = [r for r in captured_logs() if r["message"] == "BYPASS_ENGINE_TRACE"]
        assert len(traces) == 1
        assert traces[0]["engine_name"] == "approval_plan"
        assert len(traces[0]["input_fingerprint"]) == 16

    def test_fingerprint_stable_for_same_request(self, policy, captured_logs):
        _plan(policy, _request(financial_impact="6000"))
        _plan(policy, _request(financial_impact="6000"))
        _plan(policy, _request(financial_impact="7000"))

        prints = [
            r["input_fingerprint"]
            for r in captured_logs()
            if r["message"] == "BYPASS_ENGINE_TRACE"
        ]
        assert prints[0] == prints[1]
        assert prints[0] != prints[2]


# =============================================================================
# Properties
# =============================================================================


requests = st.builds(
    _request,
    risk_score=st.integers(min_value=0, max_value=100),
    financial_impact=st.decimals(
        min_value=0, max_value=50000, places=2, allow_nan=False, allow_infinity=False
    ).map(str),
    reason_category=st.sampled_from(list(ReasonCategory)),
    urgency_hint=st.sampled_from(list(UrgencyHint)),
    security_flags=st.lists(
        st.builds(SecurityFlag, st.just("flag"), st.sampled_from(list(Severity))),
        max_size=4,
    ).map(tuple),
)
instants = st.datetimes(
    min_value=datetime(2024, 1, 1), max_value=datetime(2024, 12, 31)
).map(lambda d: d.replace(tzinfo=timezone.utc))


class TestPlanProperties:
    """Determinism and structural guarantees over arbitrary requests."""

    @settings(
        max_examples=150,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(bypass_request=requests, at=instants)
    def test_plan_is_deterministic(self, engine_config, bypass_request, at):
        policy = engine_config.approval_policy
        assert _plan(policy, bypass_request, at=at) == _plan(policy, bypass_request, at=at)

    @settings(
        max_examples=150,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(bypass_request=requests, at=instants)
    def test_plan_shape(self, engine_config, bypass_request, at):
        policy = engine_config.approval_policy
        result = _plan(policy, bypass_request, at=at)
        hierarchy = policy.role_hierarchy

        assert result.required == bool(result.levels)
        assert not (result.auto_approve and result.required)
        assert result.auto_approve == qualifies_for_auto_approval(bypass_request, policy.auto_approval)
        roles = [lvl.role for lvl in result.levels]
        assert len(roles) == len(set(roles))
        assert roles == sorted(roles, key=hierarchy.rank)
        assert [lvl.level for lvl in result.levels] == list(range(1, len(roles) + 1))
        assert result.global_timeout == policy.timeouts.for_urgency(result.urgency)

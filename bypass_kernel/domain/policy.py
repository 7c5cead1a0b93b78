"""
Approval policy value objects (``bypass_kernel.domain.policy``).

Responsibility
--------------
Immutable representation of the approval policy the rule engine
evaluates.  Compiled from YAML by ``bypass_config`` at startup; a policy
reload produces a new value, never a mutation.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from bypass_kernel.domain.approval import Urgency
from bypass_kernel.domain.roles import RoleHierarchy


@dataclass(frozen=True)
class LevelRequirement:
    role: str
    timeout: timedelta


@dataclass(frozen=True)
class RuleTier:
    """One firing tier of a rule family.

    ``threshold`` is the inclusive lower bound that makes the tier fire
    (a score, an amount, or a flag count); None for tiers that fire on a
    condition rather than a value.  ``priority`` 1 is the most severe.
    """

    priority: int
    levels: tuple[LevelRequirement, ...]
    threshold: Decimal | None = None

    @property
    def roles(self) -> tuple[str, ...]:
        return tuple(lvl.role for lvl in self.levels)


@dataclass(frozen=True)
class RiskScoreRules:
    high: RuleTier
    critical: RuleTier


@dataclass(frozen=True)
class FinancialImpactRules:
    medium: RuleTier
    high: RuleTier
    critical: RuleTier


@dataclass(frozen=True)
class TimingRules:
    after_hours: RuleTier
    weekend: RuleTier
    night: RuleTier


@dataclass(frozen=True)
class SecurityFlagRules:
    critical: RuleTier
    multiple_warnings: RuleTier


@dataclass(frozen=True)
class TimeoutPolicy:
    default: timedelta = timedelta(minutes=60)
    urgent: timedelta = timedelta(minutes=30)
    critical: timedelta = timedelta(minutes=15)
    emergency: timedelta = timedelta(minutes=5)

    def for_urgency(self, urgency: Urgency) -> timedelta:
        return {
            Urgency.NORMAL: self.default,
            Urgency.URGENT: self.urgent,
            Urgency.CRITICAL: self.critical,
            Urgency.EMERGENCY: self.emergency,
        }[urgency]


@dataclass(frozen=True)
class AutoApprovalPolicy:
    """Requests strictly below both limits and without critical flags
    are approved without a human."""

    max_risk: int = 20
    max_financial: Decimal = Decimal("100")
    forbid_with_critical_flags: bool = True


@dataclass(frozen=True)
class BusinessHours:
    start_hour: int = 8
    end_hour: int = 18


@dataclass(frozen=True)
class ApprovalPolicy:
    risk_score: RiskScoreRules
    financial_impact: FinancialImpactRules
    timing: TimingRules
    security_flags: SecurityFlagRules
    role_hierarchy: RoleHierarchy
    reason_category: dict[str, RuleTier] = field(default_factory=dict)
    timeouts: TimeoutPolicy = field(default_factory=TimeoutPolicy)
    auto_approval: AutoApprovalPolicy = field(default_factory=AutoApprovalPolicy)
    business_hours: BusinessHours = field(default_factory=BusinessHours)

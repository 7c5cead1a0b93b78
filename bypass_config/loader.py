"""
Configuration Loader (``bypass_config.loader``).

Responsibility
--------------
Loads the engine YAML document and parses it into typed
``bypass_config.schema`` dataclasses (and the kernel policy values they
embed).  This is internal tooling; the single public entry point for
runtime config is ``bypass_config.get_active_config()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass.
* Durations are authored in minutes or seconds and parsed to
  ``timedelta``; monetary thresholds are parsed to ``Decimal``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  parsed document for configuration identity.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Unknown enum values or bad numbers  -> ``ValueError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from bypass_config.schema import (
    AuthConfig,
    ChannelConfig,
    ClockConfig,
    EngineConfig,
    IdentityConfig,
    NotificationConfig,
    ReminderConfig,
    RetentionConfig,
    RetryConfig,
    SchedulerConfig,
    StoreConfig,
)
from bypass_kernel.domain.approval import (
    EscalationSettings,
    EscalationTarget,
    FinalAction,
    MessageKind,
    NotificationChannel,
)
from bypass_kernel.domain.policy import (
    ApprovalPolicy,
    AutoApprovalPolicy,
    BusinessHours,
    FinancialImpactRules,
    LevelRequirement,
    RiskScoreRules,
    RuleTier,
    SecurityFlagRules,
    TimeoutPolicy,
    TimingRules,
)
from bypass_kernel.domain.roles import RoleHierarchy


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _minutes(value: Any) -> timedelta:
    return timedelta(minutes=float(value))


# ---------------------------------------------------------------------------
# Approval policy
# ---------------------------------------------------------------------------


def parse_rule_tier(data: dict[str, Any]) -> RuleTier:
    threshold = data.get("threshold")
    return RuleTier(
        priority=int(data["priority"]),
        levels=tuple(
            LevelRequirement(role=lvl["role"], timeout=_minutes(lvl["timeout_minutes"]))
            for lvl in data.get("levels", [])
        ),
        threshold=Decimal(str(threshold)) if threshold is not None else None,
    )


def parse_approval_policy(data: dict[str, Any], hierarchy: RoleHierarchy) -> ApprovalPolicy:
    risk = data["risk_score"]
    money = data["financial_impact"]
    timing = data["timing"]
    flags = data["security_flags"]
    timeouts = data.get("timeouts", {})
    auto = data.get("auto_approval", {})
    hours = data.get("business_hours", {})

    return ApprovalPolicy(
        risk_score=RiskScoreRules(
            high=parse_rule_tier(risk["high"]),
            critical=parse_rule_tier(risk["critical"]),
        ),
        financial_impact=FinancialImpactRules(
            medium=parse_rule_tier(money["medium"]),
            high=parse_rule_tier(money["high"]),
            critical=parse_rule_tier(money["critical"]),
        ),
        timing=TimingRules(
            after_hours=parse_rule_tier(timing["after_hours"]),
            weekend=parse_rule_tier(timing["weekend"]),
            night=parse_rule_tier(timing["night"]),
        ),
        security_flags=SecurityFlagRules(
            critical=parse_rule_tier(flags["critical"]),
            multiple_warnings=parse_rule_tier(flags["multiple_warnings"]),
        ),
        role_hierarchy=hierarchy,
        reason_category={
            category: parse_rule_tier(tier)
            for category, tier in (data.get("reason_category") or {}).items()
        },
        timeouts=TimeoutPolicy(
            default=_minutes(timeouts.get("default_minutes", 60)),
            urgent=_minutes(timeouts.get("urgent_minutes", 30)),
            critical=_minutes(timeouts.get("critical_minutes", 15)),
            emergency=_minutes(timeouts.get("emergency_minutes", 5)),
        ),
        auto_approval=AutoApprovalPolicy(
            max_risk=int(auto.get("max_risk", 20)),
            max_financial=Decimal(str(auto.get("max_financial", "100"))),
            forbid_with_critical_flags=bool(auto.get("forbid_with_critical_flags", True)),
        ),
        business_hours=BusinessHours(
            start_hour=int(hours.get("start_hour", 8)),
            end_hour=int(hours.get("end_hour", 18)),
        ),
    )


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


def parse_escalation_target(data: dict[str, Any]) -> EscalationTarget:
    return EscalationTarget(
        escalate_to_role=data.get("escalate_to_role"),
        escalate_to_user=data.get("escalate_to_user"),
        timeout=_minutes(data.get("timeout_minutes", 30)),
        channels=tuple(NotificationChannel(c) for c in data.get("channels", [])),
    )


def parse_escalation(data: dict[str, Any]) -> EscalationSettings:
    return EscalationSettings(
        enabled=bool(data.get("enabled", True)),
        current_level=0,
        max_level=int(data.get("max_level", 3)),
        chain=tuple(parse_escalation_target(t) for t in data.get("chain", [])),
        final_action=FinalAction(data.get("final_action", FinalAction.MANUAL_REVIEW.value)),
    )


# ---------------------------------------------------------------------------
# Ambient sections
# ---------------------------------------------------------------------------


def parse_retry(data: dict[str, Any] | None, default: RetryConfig) -> RetryConfig:
    if not data:
        return default
    return RetryConfig(
        max_attempts=int(data.get("max_attempts", default.max_attempts)),
        base_delay_seconds=float(data.get("base_delay_seconds", default.base_delay_seconds)),
        max_delay_seconds=float(data.get("max_delay_seconds", default.max_delay_seconds)),
    )


def parse_reminders(data: dict[str, Any]) -> ReminderConfig:
    return ReminderConfig(
        immediate_notification=bool(data.get("immediate_notification", True)),
        reminder_interval=_minutes(data.get("reminder_interval_minutes", 15)),
        max_reminders=int(data.get("max_reminders", 3)),
        escalation_notification=bool(data.get("escalation_notification", True)),
    )


def parse_scheduler(data: dict[str, Any]) -> SchedulerConfig:
    poll = float(data.get("poll_interval_seconds", 15))
    return SchedulerConfig(
        poll_interval_seconds=poll,
        batch_size=int(data.get("batch_size", 100)),
        lease_ttl_seconds=float(data.get("lease_ttl_seconds", poll * 2)),
    )


def parse_notification(data: dict[str, Any]) -> NotificationConfig:
    channels = tuple(
        ChannelConfig(
            channel=NotificationChannel(name),
            enabled=bool(cfg.get("enabled", True)),
            max_concurrency=int(cfg.get("max_concurrency", 4)),
        )
        for name, cfg in (data.get("channels") or {}).items()
    )
    routes = {
        MessageKind(kind): tuple(NotificationChannel(c) for c in targets)
        for kind, targets in (data.get("routes") or {}).items()
    }
    return NotificationConfig(
        channels=channels,
        routes=routes,
        queue_max_depth=int(data.get("queue_max_depth", 1000)),
        worker_count=int(data.get("worker_count", 4)),
        recovery_interval_seconds=float(data.get("recovery_interval_seconds", 30)),
        retry=parse_retry(data.get("retry"), RetryConfig()),
    )


def parse_store(data: dict[str, Any]) -> StoreConfig:
    default = StoreConfig()
    return StoreConfig(
        read_timeout_seconds=float(data.get("read_timeout_seconds", default.read_timeout_seconds)),
        cas_attempts=int(data.get("cas_attempts", default.cas_attempts)),
        database_url=data.get("database_url"),
        retry=parse_retry(data.get("retry"), default.retry),
    )


def parse_identity(data: dict[str, Any]) -> IdentityConfig:
    return IdentityConfig(
        role_hierarchy=tuple(data["role_hierarchy"]),
        admin_fallback_role=data.get("admin_fallback_role", "admin"),
    )


def parse_clock(data: dict[str, Any]) -> ClockConfig:
    return ClockConfig(
        default_timezone=data.get("default_timezone", "UTC"),
        tenant_timezones=dict(data.get("tenant_timezones") or {}),
    )


def parse_retention(data: dict[str, Any]) -> RetentionConfig:
    return RetentionConfig(
        retention_days=int(data.get("retention_days", 2557)),
        sweep_interval_seconds=float(data.get("sweep_interval_seconds", 86400)),
        batch_size=int(data.get("batch_size", 500)),
    )


def parse_auth(data: dict[str, Any]) -> AuthConfig:
    return AuthConfig(
        issuer=data["issuer"],
        audience=data["audience"],
        algorithms=tuple(data.get("algorithms", ["HS256"])),
        leeway_seconds=int(data.get("leeway_seconds", 30)),
    )


def parse_engine_config(data: dict[str, Any]) -> EngineConfig:
    """
    Parse the whole engine document.

    Raises:
        KeyError: if a required section or key is missing.
        ValueError: if an enum value, number or role list is invalid.
    """
    identity = parse_identity(data["identity"])
    policy_data = data["approval_policy"]
    roles = tuple(policy_data.get("role_hierarchy") or identity.role_hierarchy)
    hierarchy = RoleHierarchy(roles=roles, admin_fallback_role=identity.admin_fallback_role)

    return EngineConfig(
        version=int(data.get("version", 1)),
        approval_policy=parse_approval_policy(policy_data, hierarchy),
        escalation=parse_escalation(data.get("escalation") or {}),
        reminders=parse_reminders(data.get("reminders") or {}),
        scheduler=parse_scheduler(data.get("scheduler") or {}),
        notification=parse_notification(data.get("notification") or {}),
        store=parse_store(data.get("store") or {}),
        identity=identity,
        clock=parse_clock(data.get("clock") or {}),
        retention=parse_retention(data.get("retention") or {}),
        auth=parse_auth(data["auth"]),
        checksum=compute_checksum(data),
    )

"""
Configuration Validator (``bypass_config.validator``).

Responsibility
--------------
Validates a parsed ``EngineConfig`` at startup so that a malformed
policy is a startup failure and never a runtime one.

Invariants enforced
-------------------
* Role coverage -- every role named by a rule tier or escalation entry is
  in the role hierarchy.
* Threshold ordering -- risk ``high < critical``; financial
  ``medium < high < critical``.
* Priorities are 1..3 and every timeout is positive.
* Auto-approval never applies with critical security flags.
* Routing references only configured channels.
* Scheduler lease TTL is at least the poll interval.

Failure modes
-------------
* Errors (``ConfigValidationResult.errors``)  -> the engine MUST NOT start.
* Warnings  -> the engine may start but the configuration should be
  reviewed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from bypass_config.schema import EngineConfig
from bypass_kernel.domain.approval import MessageKind
from bypass_kernel.domain.policy import RuleTier


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    Contract
    --------
    * ``is_valid`` returns ``True`` only when ``errors`` is empty.
    * Warnings do not block startup but should be reviewed.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: EngineConfig) -> ConfigValidationResult:
    """Validate an engine configuration; returns every error and warning found."""
    result = ConfigValidationResult()
    _validate_policy(config, result)
    _validate_escalation(config, result)
    _validate_reminders(config, result)
    _validate_scheduler(config, result)
    _validate_notification(config, result)
    _validate_ambient(config, result)
    return result


def _tiers(config: EngineConfig) -> list[tuple[str, RuleTier]]:
    policy = config.approval_policy
    tiers = [
        ("risk_score.high", policy.risk_score.high),
        ("risk_score.critical", policy.risk_score.critical),
        ("financial_impact.medium", policy.financial_impact.medium),
        ("financial_impact.high", policy.financial_impact.high),
        ("financial_impact.critical", policy.financial_impact.critical),
        ("timing.after_hours", policy.timing.after_hours),
        ("timing.weekend", policy.timing.weekend),
        ("timing.night", policy.timing.night),
        ("security_flags.critical", policy.security_flags.critical),
        ("security_flags.multiple_warnings", policy.security_flags.multiple_warnings),
    ]
    tiers.extend(
        (f"reason_category.{name}", tier)
        for name, tier in sorted(policy.reason_category.items())
    )
    return tiers


def _validate_policy(config: EngineConfig, result: ConfigValidationResult) -> None:
    policy = config.approval_policy
    hierarchy = policy.role_hierarchy

    if hierarchy.roles != config.identity.role_hierarchy:
        result.add_error(
            "approval_policy.role_hierarchy differs from identity.role_hierarchy"
        )
    if config.identity.admin_fallback_role in hierarchy:
        result.add_warning(
            f"admin fallback role '{config.identity.admin_fallback_role}' "
            "is also a ranked role"
        )

    for name, tier in _tiers(config):
        if not 1 <= tier.priority <= 3:
            result.add_error(f"{name}: priority {tier.priority} outside 1..3")
        if not tier.levels:
            result.add_error(f"{name}: no approval levels")
        for lvl in tier.levels:
            if lvl.role not in hierarchy:
                result.add_error(f"{name}: role '{lvl.role}' not in role hierarchy")
            if lvl.timeout <= timedelta(0):
                result.add_error(f"{name}: timeout for '{lvl.role}' must be positive")

    for name in (
        "risk_score.high",
        "risk_score.critical",
        "financial_impact.medium",
        "financial_impact.high",
        "financial_impact.critical",
        "security_flags.multiple_warnings",
    ):
        tier = dict(_tiers(config))[name]
        if tier.threshold is None:
            result.add_error(f"{name}: threshold is required")

    risk = policy.risk_score
    if risk.high.threshold is not None and risk.critical.threshold is not None:
        if not risk.high.threshold < risk.critical.threshold:
            result.add_error("risk_score thresholds must satisfy high < critical")
        if not 0 <= risk.high.threshold <= 100 or not 0 <= risk.critical.threshold <= 100:
            result.add_error("risk_score thresholds must be within 0..100")

    money = policy.financial_impact
    thresholds = [money.medium.threshold, money.high.threshold, money.critical.threshold]
    if None not in thresholds and not thresholds[0] < thresholds[1] < thresholds[2]:
        result.add_error(
            "financial_impact thresholds must satisfy medium < high < critical"
        )

    for label, value in (
        ("default", policy.timeouts.default),
        ("urgent", policy.timeouts.urgent),
        ("critical", policy.timeouts.critical),
        ("emergency", policy.timeouts.emergency),
    ):
        if value <= timedelta(0):
            result.add_error(f"timeouts.{label} must be positive")

    if not policy.auto_approval.forbid_with_critical_flags:
        result.add_error("auto_approval.forbid_with_critical_flags must be true")
    if policy.auto_approval.max_risk < 0 or policy.auto_approval.max_financial < 0:
        result.add_error("auto_approval limits must be non-negative")

    hours = policy.business_hours
    if not 0 <= hours.start_hour < hours.end_hour <= 24:
        result.add_error("business_hours must satisfy 0 <= start_hour < end_hour <= 24")


def _validate_escalation(config: EngineConfig, result: ConfigValidationResult) -> None:
    escalation = config.escalation
    hierarchy = config.approval_policy.role_hierarchy
    if escalation.max_level < 0:
        result.add_error("escalation.max_level must be >= 0")
    if escalation.enabled and escalation.max_level > 0 and not escalation.chain:
        result.add_warning(
            "escalation.chain is empty; escalations go to the next role above"
        )
    for i, target in enumerate(escalation.chain, start=1):
        if target.escalate_to_role and target.escalate_to_user:
            result.add_error(
                f"escalation.chain[{i}]: set escalate_to_role or escalate_to_user, not both"
            )
        if target.escalate_to_role and target.escalate_to_role not in hierarchy:
            result.add_error(
                f"escalation.chain[{i}]: role '{target.escalate_to_role}' "
                "not in role hierarchy"
            )
        if target.timeout <= timedelta(0):
            result.add_error(f"escalation.chain[{i}]: timeout must be positive")


def _validate_reminders(config: EngineConfig, result: ConfigValidationResult) -> None:
    if config.reminders.reminder_interval <= timedelta(0):
        result.add_error("reminders.reminder_interval_minutes must be positive")
    if config.reminders.max_reminders < 0:
        result.add_error("reminders.max_reminders must be >= 0")


def _validate_scheduler(config: EngineConfig, result: ConfigValidationResult) -> None:
    scheduler = config.scheduler
    if scheduler.poll_interval_seconds <= 0:
        result.add_error("scheduler.poll_interval_seconds must be positive")
    if scheduler.batch_size <= 0:
        result.add_error("scheduler.batch_size must be positive")
    if scheduler.lease_ttl_seconds < scheduler.poll_interval_seconds:
        result.add_error("scheduler.lease_ttl_seconds must be >= poll_interval_seconds")


def _validate_notification(config: EngineConfig, result: ConfigValidationResult) -> None:
    notification = config.notification
    configured = {c.channel for c in notification.channels}
    if notification.queue_max_depth <= 0:
        result.add_error("notification.queue_max_depth must be positive")
    if notification.worker_count <= 0:
        result.add_error("notification.worker_count must be positive")
    for cfg in notification.channels:
        if cfg.max_concurrency < 1:
            result.add_error(
                f"notification.channels.{cfg.channel.value}.max_concurrency must be >= 1"
            )
    for kind, channels in notification.routes.items():
        for channel in channels:
            if channel not in configured:
                result.add_error(
                    f"notification.routes.{kind.value}: channel '{channel.value}' "
                    "is not configured"
                )
            elif channel not in notification.enabled_channels:
                result.add_warning(
                    f"notification.routes.{kind.value}: channel '{channel.value}' "
                    "is disabled"
                )
    for kind in MessageKind:
        if kind not in notification.routes:
            result.add_warning(f"notification.routes: no route for '{kind.value}'")
    retry = notification.retry
    if retry.max_attempts < 1 or retry.base_delay_seconds <= 0:
        result.add_error("notification.retry needs max_attempts >= 1 and a positive base delay")
    if retry.max_delay_seconds < retry.base_delay_seconds:
        result.add_error("notification.retry.max_delay_seconds must be >= base_delay_seconds")


def _validate_ambient(config: EngineConfig, result: ConfigValidationResult) -> None:
    if config.store.cas_attempts < 1:
        result.add_error("store.cas_attempts must be >= 1")
    if config.store.read_timeout_seconds <= 0:
        result.add_error("store.read_timeout_seconds must be positive")

    for tenant, tz in [("default", config.clock.default_timezone), *config.clock.tenant_timezones.items()]:
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError):
            result.add_error(f"clock: unknown timezone '{tz}' for {tenant}")

    if config.retention.retention_days <= 0:
        result.add_error("retention.retention_days must be positive")
    if not config.auth.algorithms:
        result.add_error("auth.algorithms must not be empty")

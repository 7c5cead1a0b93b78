"""
Engine configuration schema.

Defines the typed, frozen shape of the YAML configuration. The loader
parses the document into these types; the approval policy and
escalation settings are parsed directly into kernel domain values so
the coordinator and rule engine consume them without translation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from bypass_kernel.domain.approval import (
    EscalationSettings,
    MessageKind,
    NotificationChannel,
)
from bypass_kernel.domain.policy import ApprovalPolicy

# ---------------------------------------------------------------------------
# Reminders and scheduling
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReminderConfig:
    immediate_notification: bool = True
    reminder_interval: timedelta = timedelta(minutes=15)
    max_reminders: int = 3
    escalation_notification: bool = True


@dataclass(frozen=True)
class SchedulerConfig:
    poll_interval_seconds: float = 15.0
    batch_size: int = 100
    lease_ttl_seconds: float = 30.0


# ---------------------------------------------------------------------------
# Notification delivery
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryConfig:
    """Capped exponential backoff: ``min(base * 2**(attempt-1), max)``."""

    max_attempts: int = 5
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 900.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay_seconds * (2 ** max(attempt - 1, 0)), self.max_delay_seconds)


@dataclass(frozen=True)
class ChannelConfig:
    channel: NotificationChannel
    enabled: bool = True
    max_concurrency: int = 4


@dataclass(frozen=True)
class NotificationConfig:
    channels: tuple[ChannelConfig, ...] = ()
    routes: dict[MessageKind, tuple[NotificationChannel, ...]] = field(default_factory=dict)
    queue_max_depth: int = 1000
    worker_count: int = 4
    recovery_interval_seconds: float = 30.0
    retry: RetryConfig = field(default_factory=RetryConfig)

    @property
    def enabled_channels(self) -> frozenset[NotificationChannel]:
        return frozenset(c.channel for c in self.channels if c.enabled)

    def channel(self, channel: NotificationChannel) -> ChannelConfig | None:
        for cfg in self.channels:
            if cfg.channel == channel:
                return cfg
        return None

    def enabled_routes(self) -> dict[MessageKind, tuple[NotificationChannel, ...]]:
        enabled = self.enabled_channels
        return {
            kind: tuple(c for c in channels if c in enabled)
            for kind, channels in self.routes.items()
        }


# ---------------------------------------------------------------------------
# Store, identity, clock, retention, auth
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StoreConfig:
    read_timeout_seconds: float = 5.0
    cas_attempts: int = 3
    database_url: str | None = None
    retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(
            max_attempts=4, base_delay_seconds=0.05, max_delay_seconds=1.0
        )
    )


@dataclass(frozen=True)
class IdentityConfig:
    role_hierarchy: tuple[str, ...]
    admin_fallback_role: str = "admin"


@dataclass(frozen=True)
class ClockConfig:
    default_timezone: str = "UTC"
    tenant_timezones: dict[str, str] = field(default_factory=dict)

    def timezone_for(self, tenant_id: str) -> str:
        return self.tenant_timezones.get(tenant_id, self.default_timezone)


@dataclass(frozen=True)
class RetentionConfig:
    retention_days: int = 2557
    sweep_interval_seconds: float = 86400.0
    batch_size: int = 500


@dataclass(frozen=True)
class AuthConfig:
    issuer: str
    audience: str
    algorithms: tuple[str, ...] = ("HS256",)
    leeway_seconds: int = 30


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    """The whole engine configuration; loaded once at startup."""

    version: int
    approval_policy: ApprovalPolicy
    escalation: EscalationSettings
    reminders: ReminderConfig
    scheduler: SchedulerConfig
    notification: NotificationConfig
    store: StoreConfig
    identity: IdentityConfig
    clock: ClockConfig
    retention: RetentionConfig
    auth: AuthConfig
    checksum: str = ""

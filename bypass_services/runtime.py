"""
bypass_services.runtime -- Composition root for the approval engine.

Responsibility:
    Builds every component exactly once from one ``EngineConfig`` and
    wires them together: rule engine -> coordinator -> store, with the
    event bus, notification dispatcher, timeout scheduler, delivery
    recovery loop, retention sweeper and adapter around them.

Architecture position:
    Services -- the only place where kernel, engines, config, batch and
    services meet.  Nothing imports from this module except entry points
    and tests.

Invariants enforced:
    - Single-instance lifecycle: one coordinator, one dispatcher, one
      timer registry per runtime.
    - ``start()`` starts the background loops; ``stop()`` stops them in
      reverse order and waits for each to finish its current item.

Usage:
    from bypass_config import get_active_config
    from bypass_services.runtime import build_runtime

    runtime = build_runtime(get_active_config(), auth_secret=secret)
    runtime.start()
    ...
    runtime.stop()
"""

from __future__ import annotations

import os
from datetime import timedelta
from typing import Mapping

from bypass_batch.services.delivery_recovery import DeliveryRecovery
from bypass_batch.services.notification_dispatcher import NotificationDispatcher
from bypass_batch.services.retention_sweeper import RetentionSweeper
from bypass_batch.services.timeout_scheduler import TimeoutScheduler
from bypass_config.schema import EngineConfig
from bypass_engines.approval_plan import plan
from bypass_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from bypass_kernel.domain.approval import ApprovalPlan, BypassRequest, NotificationChannel
from bypass_kernel.domain.clock import Clock, SystemClock, TimerRegistry
from bypass_kernel.domain.notifications import NotificationSink
from bypass_kernel.domain.roles import RoleHierarchy
from bypass_kernel.logging_config import get_logger
from bypass_kernel.selectors.workflow_selector import WorkflowSelector
from bypass_kernel.services.approver_directory import (
    ApproverDirectory,
    InMemoryApproverDirectory,
)
from bypass_kernel.services.coordinator import CoordinatorSettings, WorkflowCoordinator
from bypass_kernel.services.workflow_store import (
    InMemoryWorkflowStore,
    SqlWorkflowStore,
    WorkflowStore,
)

from bypass_services.adapter import AuthSettings, BypassAdapter, TokenAuthenticator
from bypass_services.event_bus import EventBus
from bypass_services.notifications import SINK_TYPES

logger = get_logger("services.runtime")

AUTH_SECRET_ENV = "BYPASS_JWT_SECRET"


class PolicyPlanner:
    """Binds the rule engine to the active policy and tenant timezones."""

    def __init__(self, config: EngineConfig, clock: Clock):
        self._config = config
        self._clock = clock

    def __call__(self, request: BypassRequest) -> ApprovalPlan:
        return plan(
            request,
            self._config.approval_policy,
            self._clock,
            timezone_name=self._config.clock.timezone_for(request.tenant_id),
        )


def default_sinks(config: EngineConfig) -> dict[NotificationChannel, NotificationSink]:
    """One logging-transport sink per enabled channel."""
    return {
        channel: SINK_TYPES[channel]()
        for channel in sorted(config.notification.enabled_channels, key=lambda c: c.value)
    }


class BypassRuntime:
    """Holds the wired components of one engine instance.

    Guarantees:
        - All components share the same Clock, store and timer registry.
        - ``adapter`` is None when no token secret is configured.
    """

    def __init__(
        self,
        config: EngineConfig,
        store: WorkflowStore,
        directory: ApproverDirectory,
        sinks: Mapping[NotificationChannel, NotificationSink],
        clock: Clock,
        auth_secret: str | None,
        owns_engine: bool = False,
    ):
        self.config = config
        self._owns_engine = owns_engine
        self.clock = clock
        self.store = store
        self.directory = directory
        self.timers = TimerRegistry()
        self.event_bus = EventBus()
        self.role_hierarchy = RoleHierarchy(
            config.identity.role_hierarchy, config.identity.admin_fallback_role
        )

        notification = config.notification
        self.dispatcher = NotificationDispatcher(
            sinks,
            retry=notification.retry,
            clock=clock,
            channel_limits={c.channel: c.max_concurrency for c in notification.channels},
            queue_max_depth=notification.queue_max_depth,
            worker_count=notification.worker_count,
        )

        reminders = config.reminders
        self.coordinator = WorkflowCoordinator(
            store=store,
            directory=directory,
            planner=PolicyPlanner(config, clock),
            settings=CoordinatorSettings(
                role_hierarchy=self.role_hierarchy,
                escalation=config.escalation,
                routes=notification.enabled_routes(),
                immediate_notification=reminders.immediate_notification,
                escalation_notification=reminders.escalation_notification,
                max_reminders=reminders.max_reminders,
                cas_attempts=config.store.cas_attempts,
                retry=config.store.retry,
            ),
            clock=clock,
            events=self.event_bus,
            outbox=self.dispatcher,
            timers=self.timers,
        )
        self.dispatcher.bind(self.coordinator)
        self.selector = WorkflowSelector(store, clock)

        scheduler = config.scheduler
        self.scheduler = TimeoutScheduler(
            store,
            self.coordinator,
            clock=clock,
            poll_interval_seconds=scheduler.poll_interval_seconds,
            batch_size=scheduler.batch_size,
            lease_ttl=timedelta(seconds=scheduler.lease_ttl_seconds),
            reminder_interval=reminders.reminder_interval,
            max_reminders=reminders.max_reminders,
            timers=self.timers,
        )
        self.recovery = DeliveryRecovery(
            store,
            self.dispatcher,
            clock=clock,
            interval_seconds=notification.recovery_interval_seconds,
            stale_after=timedelta(seconds=notification.recovery_interval_seconds),
            batch_size=scheduler.batch_size,
        )
        self.sweeper = RetentionSweeper(
            store,
            retention=timedelta(days=config.retention.retention_days),
            clock=clock,
            interval_seconds=config.retention.sweep_interval_seconds,
            batch_size=config.retention.batch_size,
        )

        self.adapter: BypassAdapter | None = None
        if auth_secret:
            auth = config.auth
            self.adapter = BypassAdapter(
                self.coordinator,
                self.selector,
                TokenAuthenticator(
                    AuthSettings(
                        secret=auth_secret,
                        issuer=auth.issuer,
                        audience=auth.audience,
                        algorithms=auth.algorithms,
                        leeway_seconds=auth.leeway_seconds,
                        admin_role=config.identity.admin_fallback_role,
                    )
                ),
                self.event_bus,
            )
        else:
            logger.warning("adapter_disabled", extra={"reason": "no token secret configured"})

    def start(self) -> None:
        self.dispatcher.start()
        self.scheduler.start()
        self.recovery.start()
        self.sweeper.start()
        logger.info("runtime_started", extra={"config_version": self.config.version})

    def stop(self, timeout: float = 30.0) -> None:
        self.sweeper.stop(timeout)
        self.recovery.stop(timeout)
        self.scheduler.stop(timeout)
        self.dispatcher.stop(timeout)
        if self._owns_engine:
            reset_engine()
        logger.info("runtime_stopped")


def build_runtime(
    config: EngineConfig,
    store: WorkflowStore | None = None,
    directory: ApproverDirectory | None = None,
    sinks: Mapping[NotificationChannel, NotificationSink] | None = None,
    clock: Clock | None = None,
    auth_secret: str | None = None,
) -> BypassRuntime:
    """Wire a runtime; every collaborator not given gets its default.

    With no ``store`` given, ``store.database_url`` selects a SQL store on a
    freshly initialised engine; without it the store is in memory.  The
    token secret falls back to the ``BYPASS_JWT_SECRET`` environment
    variable.
    """
    hierarchy = RoleHierarchy(config.identity.role_hierarchy, config.identity.admin_fallback_role)
    owns_engine = store is None and config.store.database_url is not None
    if owns_engine:
        create_tables(init_engine_from_url(config.store.database_url))
        store = SqlWorkflowStore(get_session_factory())
    return BypassRuntime(
        config=config,
        store=store or InMemoryWorkflowStore(config.store.read_timeout_seconds),
        directory=directory or InMemoryApproverDirectory(hierarchy),
        sinks=sinks if sinks is not None else default_sinks(config),
        clock=clock or SystemClock(),
        auth_secret=auth_secret or os.environ.get(AUTH_SECRET_ENV),
        owns_engine=owns_engine,
    )

"""
Pytest fixtures for the bypass approval engine test suite.

Provides:
- Structured logging capture
- A deterministic clock pinned to Monday 2024-01-01 12:00 UTC
- A seeded approver directory for one hotel tenant
- In-memory and SQLite workflow stores (``store`` runs a test on both)
- A fully wired engine harness with recording notification sinks

Environment Variables:
- DATABASE_URL: optional PostgreSQL URL for tests marked ``postgres``.
  Those tests are skipped when it is not set.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO

import jwt
import pytest
from sqlalchemy.orm import sessionmaker

from bypass_batch.services.delivery_recovery import DeliveryRecovery
from bypass_batch.services.notification_dispatcher import NotificationDispatcher
from bypass_batch.services.retention_sweeper import RetentionSweeper
from bypass_batch.services.timeout_scheduler import TimeoutScheduler
from bypass_config import get_active_config
from bypass_config.schema import RetryConfig
from bypass_kernel.db.engine import build_engine, create_tables
from bypass_kernel.domain.approval import (
    BypassRequest,
    EscalationSettings,
    NotificationChannel,
    ReasonCategory,
    UrgencyHint,
)
from bypass_kernel.domain.clock import DeterministicClock, TimerRegistry
from bypass_kernel.domain.roles import RoleHierarchy
from bypass_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from bypass_kernel.selectors.workflow_selector import WorkflowSelector
from bypass_kernel.services.approver_directory import Approver, InMemoryApproverDirectory
from bypass_kernel.services.coordinator import CoordinatorSettings, WorkflowCoordinator
from bypass_kernel.services.workflow_store import InMemoryWorkflowStore, SqlWorkflowStore
from bypass_services.event_bus import EventBus
from bypass_services.notifications import RecordingSink
from bypass_services.runtime import PolicyPlanner

TENANT = "hotel-1"
OTHER_TENANT = "hotel-2"
INITIATOR = "front-desk-1"
START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)  # a Monday

JWT_SECRET = "test-secret-with-at-least-32-bytes!!"

# Most recently active first within each role: m1 is the preferred manager.
STAFF = (
    ("m1", "manager", 10),
    ("m2", "manager", 20),
    ("s1", "supervisor", 30),
    ("d1", "director", 40),
    ("o1", "owner", 50),
    ("a1", "admin", 60),
)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture bypass_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, harness):
            harness.create()
            logs = captured_logs()
            assert any(r["message"] == "workflow_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("bypass_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Configuration, clock, identity
# =============================================================================


@pytest.fixture(scope="session")
def engine_config():
    return get_active_config()


@pytest.fixture
def clock():
    return DeterministicClock(START)


@pytest.fixture
def role_hierarchy(engine_config):
    return RoleHierarchy(
        engine_config.identity.role_hierarchy,
        engine_config.identity.admin_fallback_role,
    )


def seed_directory(hierarchy: RoleHierarchy, tenant_id: str = TENANT) -> InMemoryApproverDirectory:
    directory = InMemoryApproverDirectory(hierarchy)
    for user_id, role, minutes_ago in STAFF:
        directory.upsert(
            Approver(
                user_id=user_id,
                tenant_id=tenant_id,
                role=role,
                last_active_at=START - timedelta(minutes=minutes_ago),
            )
        )
    return directory


@pytest.fixture
def directory(role_hierarchy):
    return seed_directory(role_hierarchy)


def make_request(
    request_id: str = "req-1",
    tenant_id: str = TENANT,
    initiator_id: str = INITIATOR,
    reason_category: ReasonCategory = ReasonCategory.SYSTEM_FAILURE,
    financial_impact: str = "0",
    risk_score: int = 30,
    urgency_hint: UrgencyHint = UrgencyHint.NORMAL,
    security_flags: tuple = (),
) -> BypassRequest:
    return BypassRequest(
        request_id=request_id,
        tenant_id=tenant_id,
        initiator_id=initiator_id,
        reason_category=reason_category,
        financial_impact=Decimal(financial_impact),
        risk_score=risk_score,
        urgency_hint=urgency_hint,
        security_flags=security_flags,
    )


@pytest.fixture
def request_factory():
    return make_request


# =============================================================================
# Stores
# =============================================================================


@pytest.fixture
def memory_store():
    return InMemoryWorkflowStore()


@pytest.fixture
def sql_session_factory():
    engine = build_engine("sqlite:///:memory:")
    create_tables(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def sql_store(sql_session_factory):
    return SqlWorkflowStore(sql_session_factory)


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    """Every store contract test runs against both implementations."""
    return request.getfixturevalue({"memory": "memory_store", "sqlite": "sql_store"}[request.param])


@pytest.fixture
def postgres_store():
    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("DATABASE_URL not set")
    engine = build_engine(url)
    create_tables(engine)
    yield SqlWorkflowStore(sessionmaker(bind=engine, expire_on_commit=False))
    engine.dispose()


# =============================================================================
# Engine harness
# =============================================================================


@dataclass
class Harness:
    """Every engine component wired around one store and one clock."""

    config: object
    clock: DeterministicClock
    store: object
    directory: InMemoryApproverDirectory
    sinks: dict[NotificationChannel, RecordingSink]
    event_bus: EventBus
    timers: TimerRegistry
    dispatcher: NotificationDispatcher
    coordinator: WorkflowCoordinator
    selector: WorkflowSelector
    scheduler: TimeoutScheduler
    recovery: DeliveryRecovery
    sweeper: RetentionSweeper
    created: list = field(default_factory=list)

    def create(self, request_id: str = "req-1", **kwargs):
        result = self.coordinator.create(make_request(request_id, **kwargs))
        self.created.append(result.workflow_id)
        return result.workflow

    def advance(self, minutes: float) -> None:
        self.clock.advance_minutes(minutes)

    def deliver(self) -> int:
        return self.dispatcher.drain_once()

    def tick(self) -> int:
        return self.scheduler.tick()

    def get(self, workflow_id: str):
        return self.coordinator.get(workflow_id)

    def sent(self, channel: NotificationChannel = NotificationChannel.EMAIL):
        return self.sinks[channel].sent


def build_harness(
    config,
    clock: DeterministicClock | None = None,
    store=None,
    directory: InMemoryApproverDirectory | None = None,
    escalation: EscalationSettings | None = None,
    sinks: dict | None = None,
    notification_retry: RetryConfig | None = None,
    sleep=lambda seconds: None,
    **settings,
) -> Harness:
    clock = clock or DeterministicClock(START)
    store = store if store is not None else InMemoryWorkflowStore()
    hierarchy = RoleHierarchy(
        config.identity.role_hierarchy, config.identity.admin_fallback_role
    )
    directory = directory or seed_directory(hierarchy)
    sinks = sinks or {channel: RecordingSink(channel) for channel in NotificationChannel}
    event_bus = EventBus()
    timers = TimerRegistry()
    dispatcher = NotificationDispatcher(
        sinks,
        retry=notification_retry or config.notification.retry,
        clock=clock,
        worker_count=1,
    )
    coordinator_settings = CoordinatorSettings(
        role_hierarchy=hierarchy,
        escalation=escalation or config.escalation,
        routes=settings.pop("routes", config.notification.enabled_routes()),
        max_reminders=config.reminders.max_reminders,
        cas_attempts=config.store.cas_attempts,
        retry=config.store.retry,
        **settings,
    )
    coordinator = WorkflowCoordinator(
        store=store,
        directory=directory,
        planner=PolicyPlanner(config, clock),
        settings=coordinator_settings,
        clock=clock,
        events=event_bus,
        outbox=dispatcher,
        timers=timers,
        sleep=sleep,
    )
    dispatcher.bind(coordinator)
    return Harness(
        config=config,
        clock=clock,
        store=store,
        directory=directory,
        sinks=sinks,
        event_bus=event_bus,
        timers=timers,
        dispatcher=dispatcher,
        coordinator=coordinator,
        selector=WorkflowSelector(store, clock),
        scheduler=TimeoutScheduler(
            store,
            coordinator,
            clock=clock,
            owner="scheduler-test",
            reminder_interval=config.reminders.reminder_interval,
            max_reminders=config.reminders.max_reminders,
            timers=timers,
        ),
        recovery=DeliveryRecovery(store, dispatcher, clock=clock),
        sweeper=RetentionSweeper(store, retention=timedelta(days=30), clock=clock, batch_size=2),
    )


@pytest.fixture
def make_harness(engine_config):
    """Factory for harnesses with per-test overrides (store, escalation, ...)."""

    def _make(**kwargs) -> Harness:
        return build_harness(engine_config, **kwargs)

    return _make


@pytest.fixture
def harness(make_harness, clock, memory_store, directory):
    return make_harness(clock=clock, store=memory_store, directory=directory)


# =============================================================================
# Tokens
# =============================================================================


@pytest.fixture
def token_factory(engine_config):
    """Build signed bearer tokens for the adapter."""

    def _token(
        user_id: str,
        roles=(),
        tenant_id: str | None = TENANT,
        expires_in: timedelta = timedelta(minutes=10),
        secret: str = JWT_SECRET,
        **claims,
    ) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "roles": list(roles),
            "iss": engine_config.auth.issuer,
            "aud": engine_config.auth.audience,
            "iat": now,
            "exp": now + expires_in,
            **claims,
        }
        if tenant_id is not None:
            payload["tenant_id"] = tenant_id
        return "Bearer " + jwt.encode(payload, secret, algorithm="HS256")

    return _token

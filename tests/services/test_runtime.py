"""Tests for wiring a complete engine instance from one configuration."""

from dataclasses import replace

import pytest

from bypass_kernel.db.engine import get_engine
from bypass_kernel.domain.approval import NotificationChannel, WorkflowStatus
from bypass_kernel.domain.clock import DeterministicClock
from bypass_kernel.services.workflow_store import InMemoryWorkflowStore, SqlWorkflowStore
from bypass_services.notifications import SINK_TYPES, RecordingSink
from bypass_services.runtime import (
    AUTH_SECRET_ENV,
    PolicyPlanner,
    build_runtime,
    default_sinks,
)
from conftest import JWT_SECRET, START, TENANT, make_request, seed_directory


def _runtime(engine_config, role_hierarchy, **kwargs):
    kwargs.setdefault("clock", DeterministicClock(START))
    kwargs.setdefault("directory", seed_directory(role_hierarchy))
    return build_runtime(engine_config, **kwargs)


class TestPolicyPlanner:

    def test_plans_with_the_active_policy(self, engine_config, clock):
        planner = PolicyPlanner(engine_config, clock)

        plan = planner(make_request(financial_impact="6000"))

        assert plan.required is True
        assert [lvl.role for lvl in plan.levels] == ["manager", "director"]

    def test_nothing_to_approve(self, engine_config, clock):
        planner = PolicyPlanner(engine_config, clock)

        plan = planner(make_request(risk_score=15, financial_impact="50"))

        assert plan.required is False
        assert plan.levels == ()


class TestDefaultSinks:

    def test_one_sink_per_enabled_channel(self, engine_config):
        sinks = default_sinks(engine_config)

        assert set(sinks) == engine_config.notification.enabled_channels
        assert NotificationChannel.WEBHOOK not in sinks
        for channel, sink in sinks.items():
            assert isinstance(sink, SINK_TYPES[channel])


class TestBuildRuntime:

    def test_adapter_enabled_with_a_secret(self, engine_config, role_hierarchy):
        runtime = _runtime(engine_config, role_hierarchy, auth_secret=JWT_SECRET)

        assert runtime.adapter is not None
        assert runtime.role_hierarchy.roles == engine_config.identity.role_hierarchy

    def test_adapter_disabled_without_a_secret(
        self, engine_config, role_hierarchy, monkeypatch, captured_logs
    ):
        monkeypatch.delenv(AUTH_SECRET_ENV, raising=False)

        runtime = _runtime(engine_config, role_hierarchy)

        assert runtime.adapter is None
        assert any(r["message"] == "adapter_disabled" for r in captured_logs())

    def test_secret_from_environment(self, engine_config, role_hierarchy, monkeypatch):
        monkeypatch.setenv(AUTH_SECRET_ENV, JWT_SECRET)

        assert _runtime(engine_config, role_hierarchy).adapter is not None

    def test_end_to_end_through_the_wired_components(self, engine_config, role_hierarchy):
        sinks = {channel: RecordingSink(channel) for channel in NotificationChannel}
        runtime = _runtime(engine_config, role_hierarchy, sinks=sinks, auth_secret=JWT_SECRET)

        created = runtime.coordinator.create(make_request(financial_impact="1000"))
        runtime.dispatcher.drain_once()

        assert created.workflow.status == WorkflowStatus.PENDING
        assert [m.recipient_id for m in sinks[NotificationChannel.EMAIL].sent] == ["m1"]
        assert runtime.store.load_by_id(created.workflow_id).undelivered_count == 0
        page = runtime.selector.list(TENANT)
        assert page.total == 1
        assert page.items[0].workflow_id == created.workflow_id
        assert len(runtime.timers) == 1

    def test_in_memory_store_by_default(self, engine_config, role_hierarchy):
        runtime = _runtime(engine_config, role_hierarchy, auth_secret=JWT_SECRET)

        assert isinstance(runtime.store, InMemoryWorkflowStore)

    def test_database_url_selects_the_sql_store(self, engine_config, role_hierarchy, tmp_path):
        url = f"sqlite:///{tmp_path / 'bypass.db'}"
        config = replace(engine_config, store=replace(engine_config.store, database_url=url))
        runtime = _runtime(config, role_hierarchy, auth_secret=JWT_SECRET)
        try:
            assert isinstance(runtime.store, SqlWorkflowStore)
            created = runtime.coordinator.create(make_request(financial_impact="1000"))
            assert runtime.store.load_by_id(created.workflow_id).version == 1
        finally:
            runtime.stop(timeout=5)

        with pytest.raises(RuntimeError):
            get_engine()


class TestLifecycle:

    def test_start_and_stop(self, engine_config, role_hierarchy, captured_logs):
        runtime = _runtime(engine_config, role_hierarchy, auth_secret=JWT_SECRET)

        runtime.start()
        try:
            assert runtime.dispatcher.is_running
            assert runtime.scheduler.is_running
            assert runtime.recovery.is_running
            assert runtime.sweeper.is_running
        finally:
            runtime.stop(timeout=5)

        assert not runtime.dispatcher.is_running
        assert not runtime.scheduler.is_running
        messages = [r["message"] for r in captured_logs()]
        assert "runtime_started" in messages
        assert "runtime_stopped" in messages

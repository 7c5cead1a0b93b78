"""Tests for read-side workflow queries."""

from datetime import timedelta

import pytest

from bypass_kernel.domain.approval import Decision, ReasonCategory, WorkflowStatus
from bypass_kernel.exceptions import InvalidInputError, WorkflowNotFoundError
from bypass_kernel.selectors.workflow_selector import MAX_PAGE_SIZE
from bypass_kernel.services.workflow_store import WorkflowFilter
from conftest import OTHER_TENANT, START, TENANT


class TestGet:

    def test_other_tenant_is_not_found(self, harness):
        wf = harness.create(financial_impact="6000")

        assert harness.selector.get(wf.workflow_id, TENANT).workflow_id == wf.workflow_id
        with pytest.raises(WorkflowNotFoundError):
            harness.selector.get(wf.workflow_id, OTHER_TENANT)
        with pytest.raises(WorkflowNotFoundError):
            harness.selector.audit(wf.workflow_id, OTHER_TENANT)


class TestList:

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"offset": -1}, "offset"),
            ({"limit": 0}, "limit"),
            ({"limit": MAX_PAGE_SIZE + 1}, "limit"),
            (
                {"filter": WorkflowFilter(created_from=START, created_to=START - timedelta(days=1))},
                "created_from",
            ),
        ],
    )
    def test_rejects_bad_arguments(self, harness, kwargs, field):
        with pytest.raises(InvalidInputError) as exc_info:
            harness.selector.list(TENANT, **kwargs)
        assert exc_info.value.field == field

    def test_page_of_summaries(self, harness):
        for n in range(3):
            harness.create(f"req-{n}", financial_impact="6000")
            harness.advance(1)

        page = harness.selector.list(TENANT, offset=0, limit=2)

        assert page.total == 3
        assert page.has_more is True
        newest = page.items[0]
        assert newest.request_id == "req-2"
        assert newest.status == WorkflowStatus.PENDING
        assert newest.total_levels == 2
        assert newest.current_approver == "m1"
        assert newest.completion_percentage == 0
        assert newest.time_remaining == timedelta(minutes=29)
        assert harness.selector.list(TENANT, offset=2, limit=2).has_more is False


class TestPendingForApprover:

    def test_most_urgent_deadline_first(self, harness):
        normal = harness.create("req-normal", financial_impact="1000")
        critical = harness.create("req-critical", risk_score=85)
        urgent = harness.create("req-urgent", financial_impact="6000")

        queue = harness.selector.pending_for_approver(TENANT, "m1")

        assert [s.workflow_id for s in queue] == [
            critical.workflow_id,
            urgent.workflow_id,
            normal.workflow_id,
        ]
        assert harness.selector.pending_for_approver(TENANT, "d1") == []


class TestStats:

    def test_empty_tenant(self, harness):
        stats = harness.selector.stats(TENANT)

        assert stats.total == 0
        assert stats.approval_rate is None
        assert stats.average_response_time is None
        assert set(stats.by_status) == {
            s.value for s in WorkflowStatus if s != WorkflowStatus.ESCALATED
        }

    def test_counts_and_rates(self, harness):
        approved = harness.create("req-approved", financial_impact="1000")
        rejected = harness.create("req-rejected", financial_impact="1000")
        harness.create("req-pending", financial_impact="1000")
        harness.create(
            "req-auto",
            risk_score=15,
            financial_impact="50",
            reason_category=ReasonCategory.OTHER,
        )
        harness.advance(10)
        harness.coordinator.respond(approved.workflow_id, "m1", Decision.APPROVE)
        harness.advance(10)
        harness.coordinator.respond(rejected.workflow_id, "m1", Decision.REJECT)

        stats = harness.selector.stats(TENANT)

        assert stats.total == 4
        assert stats.by_status["approved"] == 2
        assert stats.by_status["rejected"] == 1
        assert stats.by_status["pending"] == 1
        assert stats.auto_approved == 1
        assert stats.approval_rate == round(2 / 3, 4)
        # The automatic decision does not count as a response
        assert stats.average_response_time == timedelta(minutes=15)

    def test_escalations_are_counted(self, harness):
        harness.create(risk_score=85)
        harness.advance(16)
        harness.tick()

        assert harness.selector.stats(TENANT).escalated == 1

    def test_window(self, harness):
        harness.create("req-old", financial_impact="1000")
        harness.advance(120)
        harness.create("req-new", financial_impact="1000")

        stats = harness.selector.stats(TENANT, window=timedelta(hours=1))

        assert stats.total == 1
        assert stats.window_start == START + timedelta(minutes=60)

    def test_window_must_be_positive(self, harness):
        with pytest.raises(InvalidInputError):
            harness.selector.stats(TENANT, window=timedelta(0))

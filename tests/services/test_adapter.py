"""
Tests for the external request facade.

Tokens are real HS256 JWTs signed with the suite's test secret; the
engine behind the adapter is the standard harness.
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from bypass_kernel.domain.approval import ReasonCategory, ResponseChannel, WorkflowStatus
from bypass_kernel.exceptions import AuthenticationError
from bypass_services.adapter import (
    AuthSettings,
    BypassAdapter,
    Principal,
    RequestMeta,
    TokenAuthenticator,
    parse_bypass_request,
)
from conftest import INITIATOR, JWT_SECRET, OTHER_TENANT, TENANT

SUBMISSION = {
    "request_id": "req-api-1",
    "reason_category": "system_failure",
    "financial_impact": "6000",
    "risk_score": 30,
    "description": "POS terminal down at the bar",
}


@pytest.fixture
def authenticator(engine_config):
    auth = engine_config.auth
    return TokenAuthenticator(
        AuthSettings(
            secret=JWT_SECRET,
            issuer=auth.issuer,
            audience=auth.audience,
            algorithms=auth.algorithms,
            leeway_seconds=auth.leeway_seconds,
        )
    )


@pytest.fixture
def adapter(harness, authenticator):
    return BypassAdapter(harness.coordinator, harness.selector, authenticator, harness.event_bus)


@pytest.fixture
def initiator(token_factory):
    return token_factory(INITIATOR, roles=["front_desk"])


@pytest.fixture
def submitted(adapter, initiator):
    response = adapter.submit_bypass(initiator, SUBMISSION)
    assert response.ok, response.error
    return response.data["workflow_id"]


def _error_code(response) -> str:
    assert response.ok is False
    return response.error["code"]


class TestAuthentication:

    def test_missing_token(self, adapter):
        assert _error_code(adapter.submit_bypass(None, SUBMISSION)) == "UNAUTHENTICATED"

    def test_empty_bearer(self, adapter):
        assert _error_code(adapter.submit_bypass("Bearer ", SUBMISSION)) == "UNAUTHENTICATED"

    def test_expired_token(self, adapter, token_factory):
        token = token_factory(INITIATOR, expires_in=timedelta(minutes=-10))

        response = adapter.submit_bypass(token, SUBMISSION)

        assert _error_code(response) == "UNAUTHENTICATED"
        assert "token expired" in response.error["message"]

    def test_wrong_signature(self, adapter, token_factory):
        token = token_factory(INITIATOR, secret="another-secret-that-is-also-32-bytes!")
        assert _error_code(adapter.submit_bypass(token, SUBMISSION)) == "UNAUTHENTICATED"

    def test_wrong_audience(self, adapter, token_factory):
        token = token_factory(INITIATOR, aud="someone-else")
        assert _error_code(adapter.submit_bypass(token, SUBMISSION)) == "UNAUTHENTICATED"

    def test_token_without_tenant(self, adapter, token_factory):
        token = token_factory(INITIATOR, tenant_id=None)
        response = adapter.submit_bypass(token, SUBMISSION)
        assert _error_code(response) == "UNAUTHENTICATED"
        assert "tenant_id" in response.error["message"]

    def test_principal_from_claims(self, authenticator, token_factory):
        principal = authenticator.authenticate(token_factory("a1", roles=["admin", "owner"]))

        assert principal == Principal("a1", TENANT, frozenset({"admin", "owner"}), is_admin=True)

    def test_single_role_string(self, authenticator, engine_config):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "sub": "m1",
                "tenant_id": TENANT,
                "roles": "manager",
                "iss": engine_config.auth.issuer,
                "aud": engine_config.auth.audience,
                "exp": now + timedelta(minutes=5),
            },
            JWT_SECRET,
            algorithm="HS256",
        )
        principal = authenticator.authenticate(f"Bearer {token}")
        assert principal.roles == frozenset({"manager"})

    def test_raw_token_without_bearer_prefix(self, authenticator, token_factory):
        raw = token_factory("m1").split(" ", 1)[1]
        assert authenticator.authenticate(raw).user_id == "m1"

    def test_authenticate_raises_typed_error(self, authenticator):
        with pytest.raises(AuthenticationError):
            authenticator.authenticate("Bearer not-a-jwt")


class TestSubmit:

    def test_creates_workflow_for_token_identity(self, adapter, harness, initiator):
        body = dict(SUBMISSION, initiator_id="m1", tenant_id=OTHER_TENANT)

        response = adapter.submit_bypass(initiator, body)

        assert response.ok
        assert response.data["status"] == "pending"
        assert response.data["already_existed"] is False
        wf = harness.get(response.data["workflow_id"])
        assert wf.initiator_id == INITIATOR
        assert wf.tenant_id == TENANT

    def test_resubmission_is_idempotent(self, adapter, initiator, submitted):
        response = adapter.submit_bypass(initiator, SUBMISSION)

        assert response.data == {
            "workflow_id": submitted,
            "status": "pending",
            "already_existed": True,
        }

    @pytest.mark.parametrize(
        "field,value",
        [
            ("request_id", ""),
            ("reason_category", "bored"),
            ("financial_impact", "-5"),
            ("financial_impact", "lots"),
            ("financial_impact", "NaN"),
            ("risk_score", 101),
            ("risk_score", "high"),
            ("risk_score", 12.5),
            ("urgency_hint", "yesterday"),
            ("security_flags", "none"),
            ("description", "x" * 2001),
        ],
    )
    def test_invalid_fields(self, adapter, harness, initiator, field, value):
        response = adapter.submit_bypass(initiator, dict(SUBMISSION, **{field: value}))

        assert _error_code(response) == "INVALID_INPUT"
        assert harness.store.list_workflows(TENANT)[1] == 0

    def test_parse_security_flags(self):
        principal = Principal("u1", TENANT)
        request = parse_bypass_request(
            dict(
                SUBMISSION,
                reason_category="OTHER",
                security_flags=[{"kind": "badge_reuse", "severity": "critical"}],
            ),
            principal,
        )
        assert request.reason_category == ReasonCategory.OTHER
        assert request.security_flags[0].kind == "badge_reuse"
        assert request.security_flags[0].severity.value == "critical"


class TestRespond:

    def test_approve_records_request_metadata(self, adapter, harness, token_factory, submitted):
        meta = RequestMeta(ip_address="10.0.0.7", user_agent="pos/2.1", channel="mobile")

        response = adapter.respond(token_factory("m1", ["manager"]), submitted, "approve", "ok", meta)

        assert response.ok
        assert response.data["current_approver"] == "d1"
        step = harness.get(submitted).steps[0]
        assert step.channel == ResponseChannel.MOBILE
        assert step.ip_address == "10.0.0.7"
        assert step.user_agent == "pos/2.1"
        assert step.notes == "ok"

    def test_automatic_channel_refused(self, adapter, token_factory, submitted):
        meta = RequestMeta(channel="automatic")
        response = adapter.respond(token_factory("m1"), submitted, "approve", meta=meta)
        assert _error_code(response) == "INVALID_INPUT"

    def test_unknown_decision(self, adapter, token_factory, submitted):
        response = adapter.respond(token_factory("m1"), submitted, "maybe")
        assert _error_code(response) == "INVALID_INPUT"

    def test_not_the_current_approver(self, adapter, token_factory, submitted):
        response = adapter.respond(token_factory("d1"), submitted, "approve")
        assert _error_code(response) == "NOT_CURRENT_APPROVER"

    def test_other_tenant_cannot_see_workflow(self, adapter, token_factory, submitted):
        token = token_factory("m1", tenant_id=OTHER_TENANT)
        assert _error_code(adapter.respond(token, submitted, "approve")) == "WORKFLOW_NOT_FOUND"
        assert _error_code(adapter.get(token, submitted)) == "WORKFLOW_NOT_FOUND"

    def test_respond_after_completion(self, adapter, token_factory, submitted):
        adapter.respond(token_factory("m1"), submitted, "reject")
        response = adapter.respond(token_factory("m1"), submitted, "approve")
        assert _error_code(response) == "WORKFLOW_NOT_PENDING"


class TestDelegateEscalateCancel:

    def test_delegate(self, adapter, token_factory, submitted):
        response = adapter.delegate(token_factory("m1"), submitted, "s1", "off shift")

        assert response.ok
        assert response.data["current_approver"] == "s1"

    def test_delegate_to_unknown(self, adapter, token_factory, submitted):
        response = adapter.delegate(token_factory("m1"), submitted, "ghost")
        assert _error_code(response) == "APPROVER_NOT_FOUND"

    def test_escalate_by_assignee(self, adapter, token_factory, submitted):
        response = adapter.escalate(token_factory("m1"), submitted, "above my limit")

        assert response.ok
        assert response.data["current_approver"] == "s1"

    def test_escalate_by_admin(self, adapter, token_factory, submitted):
        response = adapter.escalate(token_factory("a1", ["admin"]), submitted, "stuck")
        assert response.ok

    def test_escalate_by_bystander(self, adapter, token_factory, submitted):
        response = adapter.escalate(token_factory("m2", ["manager"]), submitted, "me too")
        assert _error_code(response) == "UNAUTHORISED"

    def test_escalate_needs_reason(self, adapter, token_factory, submitted):
        response = adapter.escalate(token_factory("m1"), submitted, "  ")
        assert _error_code(response) == "INVALID_INPUT"

    def test_cancel_by_initiator(self, adapter, initiator, submitted):
        response = adapter.cancel(initiator, submitted, "fixed")
        assert response.data["status"] == "cancelled"

    def test_cancel_by_admin(self, adapter, token_factory, submitted):
        response = adapter.cancel(token_factory("a1", ["admin"]), submitted)
        assert response.data["status"] == "cancelled"

    def test_cancel_by_approver(self, adapter, token_factory, submitted):
        assert _error_code(adapter.cancel(token_factory("m1"), submitted)) == "UNAUTHORISED"


class TestReads:

    def test_list_pages(self, adapter, initiator, token_factory):
        for n in range(3):
            adapter.submit_bypass(initiator, dict(SUBMISSION, request_id=f"req-{n}"))

        response = adapter.list(token_factory("m1"), offset=0, limit=2)

        assert response.data["total"] == 3
        assert len(response.data["items"]) == 2
        assert response.data["has_more"] is True
        item = response.data["items"][0]
        assert item["status"] == "pending"
        assert item["current_approver"] == "m1"
        assert item["total_levels"] == 2

    def test_list_filter(self, adapter, token_factory, submitted):
        token = token_factory("m1")
        assert adapter.list(token, {"status": "approved"}).data["total"] == 0
        assert adapter.list(token, {"status": "PENDING"}).data["total"] == 1

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"limit": 500},
            {"limit": 0},
            {"offset": -1},
            {"filter": {"status": "lost"}},
            {"filter": {"created_from": "2024-01-01T00:00:00"}},
            {"filter": {"created_from": "yesterday"}},
        ],
    )
    def test_list_validation(self, adapter, token_factory, kwargs):
        assert _error_code(adapter.list(token_factory("m1"), **kwargs)) == "INVALID_INPUT"

    def test_pending_queue(self, adapter, token_factory, submitted):
        assert [i["workflow_id"] for i in adapter.pending(token_factory("m1")).data] == [submitted]
        assert adapter.pending(token_factory("d1")).data == []

    def test_get_document(self, adapter, token_factory, submitted):
        data = adapter.get(token_factory("m1"), submitted).data

        assert "format" not in data
        assert data["workflow_id"] == submitted
        assert data["status"] == WorkflowStatus.PENDING.value
        assert data["current_approver"] == "m1"
        assert data["completion_percentage"] == 0
        assert [s["required_role"] for s in data["steps"]] == ["manager", "director"]

    def test_audit(self, adapter, token_factory, submitted):
        entries = adapter.audit(token_factory("m1"), submitted).data

        assert [e["action"] for e in entries] == ["workflow_created", "approval_requested"]
        assert entries[0]["actor_id"] == INITIATOR

    def test_stats(self, adapter, token_factory, submitted):
        data = adapter.stats(token_factory("m1"), window_hours=24).data

        assert data["total"] == 1
        assert data["by_status"]["pending"] == 1
        assert data["by_status"]["approved"] == 0
        assert data["approval_rate"] is None

    def test_stats_window_validation(self, adapter, token_factory):
        response = adapter.stats(token_factory("m1"), window_hours="a day")
        assert _error_code(response) == "INVALID_INPUT"


class TestSubscribe:

    def test_default_scopes(self, adapter, token_factory, initiator):
        response, subscription = adapter.subscribe(token_factory("m1", ["manager"]))

        assert response.ok
        assert response.data["scopes"] == ["tenant:hotel-1:hotel-1", "user:hotel-1:m1"]

        adapter.submit_bypass(initiator, SUBMISSION)
        assert [e.kind for e in subscription.drain()] == ["approval_requested"]

    def test_own_role_scope(self, adapter, token_factory):
        response, subscription = adapter.subscribe(
            token_factory("d1", ["director"]), [("role", "director")]
        )
        assert response.ok
        assert subscription is not None

    def test_foreign_scope_refused(self, adapter, harness, token_factory):
        response, subscription = adapter.subscribe(token_factory("m2", ["manager"]), [("user", "m1")])

        assert _error_code(response) == "SCOPE_NOT_PERMITTED"
        assert subscription is None
        assert harness.event_bus.subscriber_count() == 0

    def test_role_not_held(self, adapter, token_factory):
        response, _ = adapter.subscribe(token_factory("m2", ["manager"]), [("role", "owner")])
        assert _error_code(response) == "SCOPE_NOT_PERMITTED"

    def test_without_event_bus(self, harness, authenticator, token_factory):
        adapter = BypassAdapter(harness.coordinator, harness.selector, authenticator)
        response, subscription = adapter.subscribe(token_factory("m1"))
        assert _error_code(response) == "INVALID_INPUT"
        assert subscription is None


class TestErrorTranslation:

    def test_unexpected_error_is_internal(self, harness, authenticator, initiator, captured_logs):
        class BrokenCoordinator:
            def create(self, request):
                raise RuntimeError("disk on fire")

        adapter = BypassAdapter(BrokenCoordinator(), harness.selector, authenticator)

        response = adapter.submit_bypass(initiator, SUBMISSION)

        assert response.error == {"code": "INTERNAL_ERROR", "message": "internal error"}
        assert "disk on fire" not in str(response.to_dict())
        assert any(r["message"] == "adapter_internal_error" for r in captured_logs())

    def test_correlation_id_is_echoed(self, adapter, initiator):
        meta = RequestMeta(correlation_id="corr-42")

        response = adapter.submit_bypass(initiator, SUBMISSION, meta)

        assert response.correlation_id == "corr-42"
        assert response.to_dict() == {
            "ok": True,
            "data": response.data,
            "correlation_id": "corr-42",
        }

    def test_correlation_id_generated(self, adapter):
        response = adapter.submit_bypass(None, SUBMISSION)
        assert response.correlation_id
        assert response.to_dict()["error"]["code"] == "UNAUTHENTICATED"

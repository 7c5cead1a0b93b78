"""
BypassAdapter -- the external request facade of the approval engine.

Responsibility:
    Authenticates the caller from a bearer token, validates and converts
    raw inputs into domain values, routes into the coordinator (writes)
    or the selector (reads), and translates every outcome into an
    ``AdapterResponse`` carrying either data or a stable ``{code,
    message}`` error.

Architecture position:
    Services -- the outermost layer of the engine.  An HTTP or websocket
    layer binds these operations to routes; this module knows nothing
    about HTTP.

Invariants enforced:
    - The acting user and tenant always come from the verified token,
      never from the request body.
    - Subscriptions are limited to the caller's own user, tenant and
      role scopes.

Failure modes:
    - BypassEngineError -> ``{code: exc.code, message: str(exc)}``.
    - Any other exception is logged with traceback and returned as
      ``{code: "INTERNAL_ERROR", message: "internal error"}``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping
from uuid import uuid4

import jwt

from bypass_kernel.domain.approval import (
    ActorContext,
    BypassRequest,
    Decision,
    ReasonCategory,
    ResponseChannel,
    SecurityFlag,
    Severity,
    UrgencyHint,
    WorkflowStatus,
)
from bypass_kernel.exceptions import (
    AuthenticationError,
    BypassEngineError,
    InvalidInputError,
    ScopeNotPermittedError,
    UnauthorisedError,
)
from bypass_kernel.logging_config import LogContext, get_logger
from bypass_kernel.models.workflow import audit_entry_to_dict, workflow_to_document
from bypass_kernel.selectors.workflow_selector import (
    AggregateStats,
    WorkflowSelector,
    WorkflowSummary,
)
from bypass_kernel.services.coordinator import WorkflowCoordinator
from bypass_kernel.services.workflow_store import WorkflowFilter

from bypass_services.event_bus import EventBus, Scope, ScopeKind, Subscription

logger = get_logger("services.adapter")

MAX_NOTES_LENGTH = 2000
MAX_DESCRIPTION_LENGTH = 2000
_HUMAN_CHANNELS = frozenset(c for c in ResponseChannel if c != ResponseChannel.AUTOMATIC)


@dataclass(frozen=True)
class Principal:
    user_id: str
    tenant_id: str
    roles: frozenset[str] = frozenset()
    is_admin: bool = False

    def allowed_scopes(self) -> frozenset[Scope]:
        scopes = {Scope.user(self.tenant_id, self.user_id), Scope.tenant(self.tenant_id)}
        scopes.update(Scope.role(self.tenant_id, r) for r in self.roles)
        return frozenset(scopes)


@dataclass(frozen=True)
class AuthSettings:
    """Bearer-token verification settings."""

    secret: str
    issuer: str
    audience: str
    algorithms: tuple[str, ...] = ("HS256",)
    leeway_seconds: int = 30
    admin_role: str = "admin"


@dataclass(frozen=True)
class AdapterResponse:
    ok: bool
    data: Any = None
    error: dict[str, str] | None = None
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "data": self.data, "correlation_id": self.correlation_id}
        return {"ok": False, "error": self.error, "correlation_id": self.correlation_id}


@dataclass(frozen=True)
class RequestMeta:
    """Transport-level details of the inbound call."""

    ip_address: str | None = None
    user_agent: str | None = None
    correlation_id: str | None = None
    channel: str = ResponseChannel.WEB.value


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TokenAuthenticator:
    """Verifies a JWT bearer token and maps its claims to a Principal.

    Required claims: ``sub`` (user id), ``tenant_id``, ``exp``, ``iss`` and
    ``aud``.  Roles come from the ``roles`` list claim.
    """

    def __init__(self, settings: AuthSettings):
        self._settings = settings

    def authenticate(self, authorization: str | None) -> Principal:
        if not authorization:
            raise AuthenticationError("missing bearer token")
        token = authorization
        if authorization.lower().startswith("bearer "):
            token = authorization[7:].strip()
        if not token:
            raise AuthenticationError("empty bearer token")

        try:
            claims = jwt.decode(
                token,
                self._settings.secret,
                algorithms=list(self._settings.algorithms),
                audience=self._settings.audience,
                issuer=self._settings.issuer,
                leeway=self._settings.leeway_seconds,
                options={"require": ["exp", "sub", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationError("token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationError(type(exc).__name__) from exc

        tenant_id = claims.get("tenant_id")
        if not isinstance(tenant_id, str) or not tenant_id:
            raise AuthenticationError("token has no tenant_id claim")
        raw_roles = claims.get("roles") or []
        if isinstance(raw_roles, str):
            raw_roles = [raw_roles]
        roles = frozenset(str(r) for r in raw_roles)
        return Principal(
            user_id=str(claims["sub"]),
            tenant_id=tenant_id,
            roles=roles,
            is_admin=self._settings.admin_role in roles,
        )


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------


def _require_str(data: Mapping[str, Any], key: str, max_length: int = 128) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(key, "is required")
    if len(value) > max_length:
        raise InvalidInputError(key, f"must be at most {max_length} characters")
    return value.strip()


def _optional_text(value: Any, key: str, max_length: int) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidInputError(key, "must be a string")
    if len(value) > max_length:
        raise InvalidInputError(key, f"must be at most {max_length} characters")
    return value


def _enum(enum_type, value: Any, key: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_type)
        raise InvalidInputError(key, f"must be one of: {allowed}") from None


def _decimal(value: Any, key: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise InvalidInputError(key, "must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise InvalidInputError(key, "must be a number") from None
    if not amount.is_finite():
        raise InvalidInputError(key, "must be finite")
    if amount < 0:
        raise InvalidInputError(key, "must be non-negative")
    return amount


def _int_in_range(value: Any, key: str, low: int, high: int) -> int:
    if isinstance(value, bool):
        raise InvalidInputError(key, "must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidInputError(key, "must be an integer") from None
    if isinstance(value, float) and value != number:
        raise InvalidInputError(key, "must be an integer")
    if not low <= number <= high:
        raise InvalidInputError(key, f"must be within {low}..{high}")
    return number


def _datetime(value: Any, key: str) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            raise InvalidInputError(key, "must be an ISO-8601 timestamp") from None
    if parsed.tzinfo is None:
        raise InvalidInputError(key, "must carry a timezone offset")
    return parsed


def _security_flags(raw: Any) -> tuple[SecurityFlag, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise InvalidInputError("security_flags", "must be a list")
    flags = []
    for item in raw:
        if not isinstance(item, Mapping):
            raise InvalidInputError("security_flags", "entries must be objects")
        flags.append(
            SecurityFlag(
                kind=_require_str(item, "kind"),
                severity=_enum(Severity, item.get("severity", "info"), "severity"),
            )
        )
    return tuple(flags)


def parse_bypass_request(data: Mapping[str, Any], principal: Principal) -> BypassRequest:
    return BypassRequest(
        request_id=_require_str(data, "request_id"),
        tenant_id=principal.tenant_id,
        initiator_id=principal.user_id,
        reason_category=_enum(ReasonCategory, data.get("reason_category"), "reason_category"),
        financial_impact=_decimal(data.get("financial_impact", 0), "financial_impact"),
        risk_score=_int_in_range(data.get("risk_score"), "risk_score", 0, 100),
        urgency_hint=_enum(UrgencyHint, data.get("urgency_hint", "normal"), "urgency_hint"),
        security_flags=_security_flags(data.get("security_flags")),
        description=_optional_text(data.get("description"), "description", MAX_DESCRIPTION_LENGTH),
    )


def parse_filter(data: Mapping[str, Any] | None) -> WorkflowFilter:
    data = data or {}
    status = data.get("status")
    return WorkflowFilter(
        status=_enum(WorkflowStatus, status, "status") if status is not None else None,
        assignee_id=data.get("assignee_id"),
        initiator_id=data.get("initiator_id"),
        created_from=_datetime(data.get("created_from"), "created_from"),
        created_to=_datetime(data.get("created_to"), "created_to"),
    )


# ---------------------------------------------------------------------------
# Output shaping
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _seconds(value: timedelta | None) -> float | None:
    return value.total_seconds() if value is not None else None


def summary_to_dict(summary: WorkflowSummary) -> dict[str, Any]:
    return {
        "workflow_id": summary.workflow_id,
        "request_id": summary.request_id,
        "initiator_id": summary.initiator_id,
        "status": summary.status.value,
        "urgency": summary.urgency.value,
        "current_level": summary.current_level,
        "total_levels": summary.total_levels,
        "current_approver": summary.current_approver,
        "completion_percentage": summary.completion_percentage,
        "time_remaining_seconds": _seconds(summary.time_remaining),
        "timeout_at": _iso(summary.timeout_at),
        "created_at": _iso(summary.created_at),
        "updated_at": _iso(summary.updated_at),
    }


def stats_to_dict(stats: AggregateStats) -> dict[str, Any]:
    return {
        "tenant_id": stats.tenant_id,
        "window_start": _iso(stats.window_start),
        "total": stats.total,
        "by_status": dict(stats.by_status),
        "auto_approved": stats.auto_approved,
        "escalated": stats.escalated,
        "approval_rate": stats.approval_rate,
        "average_response_time_seconds": _seconds(stats.average_response_time),
        "average_total_duration_seconds": _seconds(stats.average_total_duration),
    }


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class BypassAdapter:
    """
    Thin facade that authenticates, validates and routes.

    Contract:
        Every public method takes the raw ``Authorization`` value first
        and returns an ``AdapterResponse``; none of them raise.

    Non-goals:
        - No HTTP routing, rate limiting or payload size policing.
    """

    def __init__(
        self,
        coordinator: WorkflowCoordinator,
        selector: WorkflowSelector,
        authenticator: TokenAuthenticator,
        event_bus: EventBus | None = None,
    ):
        self._coordinator = coordinator
        self._selector = selector
        self._auth = authenticator
        self._bus = event_bus

    # -- writes ---------------------------------------------------------

    def submit_bypass(
        self, authorization: str | None, data: Mapping[str, Any], meta: RequestMeta | None = None
    ) -> AdapterResponse:
        def run(principal: Principal) -> dict[str, Any]:
            result = self._coordinator.create(parse_bypass_request(data, principal))
            return {
                "workflow_id": result.workflow_id,
                "status": result.workflow.status.value,
                "already_existed": result.already_existed,
            }

        return self._handle("submit_bypass", authorization, meta, run)

    def respond(
        self,
        authorization: str | None,
        workflow_id: str,
        decision: str,
        notes: str | None = None,
        meta: RequestMeta | None = None,
    ) -> AdapterResponse:
        meta = meta or RequestMeta()

        def run(principal: Principal) -> dict[str, Any]:
            channel = _enum(ResponseChannel, meta.channel, "channel")
            if channel not in _HUMAN_CHANNELS:
                raise InvalidInputError("channel", "automatic responses are not accepted")
            workflow = self._coordinator.respond(
                workflow_id,
                principal.user_id,
                _enum(Decision, decision, "decision"),
                _optional_text(notes, "notes", MAX_NOTES_LENGTH),
                ActorContext(channel, meta.ip_address, meta.user_agent),
                tenant_id=principal.tenant_id,
            )
            return self._state(workflow)

        return self._handle("respond", authorization, meta, run)

    def delegate(
        self,
        authorization: str | None,
        workflow_id: str,
        to_user_id: str,
        reason: str | None = None,
        meta: RequestMeta | None = None,
    ) -> AdapterResponse:
        def run(principal: Principal) -> dict[str, Any]:
            target = _require_str({"to_user_id": to_user_id}, "to_user_id")
            workflow = self._coordinator.delegate(
                workflow_id,
                principal.user_id,
                target,
                _optional_text(reason, "reason", MAX_NOTES_LENGTH),
                tenant_id=principal.tenant_id,
            )
            return self._state(workflow)

        return self._handle("delegate", authorization, meta, run)

    def escalate(
        self,
        authorization: str | None,
        workflow_id: str,
        reason: str,
        meta: RequestMeta | None = None,
    ) -> AdapterResponse:
        def run(principal: Principal) -> dict[str, Any]:
            text = _require_str({"reason": reason}, "reason", MAX_NOTES_LENGTH)
            current = self._coordinator.get(workflow_id, principal.tenant_id)
            # Manual escalation: the current assignee or an admin
            if not principal.is_admin and current.current_approver != principal.user_id:
                raise UnauthorisedError(principal.user_id, f"escalate {workflow_id}")
            workflow = self._coordinator.escalate(
                workflow_id, text, actor_id=principal.user_id, tenant_id=principal.tenant_id
            )
            return self._state(workflow)

        return self._handle("escalate", authorization, meta, run)

    def cancel(
        self,
        authorization: str | None,
        workflow_id: str,
        reason: str | None = None,
        meta: RequestMeta | None = None,
    ) -> AdapterResponse:
        def run(principal: Principal) -> dict[str, Any]:
            workflow = self._coordinator.cancel(
                workflow_id,
                principal.user_id,
                _optional_text(reason, "reason", MAX_NOTES_LENGTH),
                is_admin=principal.is_admin,
                tenant_id=principal.tenant_id,
            )
            return self._state(workflow)

        return self._handle("cancel", authorization, meta, run)

    # -- reads ----------------------------------------------------------

    def list(
        self,
        authorization: str | None,
        filter: Mapping[str, Any] | None = None,
        offset: int = 0,
        limit: int = 50,
        meta: RequestMeta | None = None,
    ) -> AdapterResponse:
        def run(principal: Principal) -> dict[str, Any]:
            page = self._selector.list(
                principal.tenant_id,
                parse_filter(filter),
                _int_in_range(offset, "offset", 0, 10**9),
                _int_in_range(limit, "limit", 1, 200),
            )
            return {
                "items": [summary_to_dict(s) for s in page.items],
                "total": page.total,
                "offset": page.offset,
                "limit": page.limit,
                "has_more": page.has_more,
            }

        return self._handle("list", authorization, meta, run)

    def pending(self, authorization: str | None, meta: RequestMeta | None = None) -> AdapterResponse:
        """The caller's own approval queue."""

        def run(principal: Principal) -> list[dict[str, Any]]:
            items = self._selector.pending_for_approver(principal.tenant_id, principal.user_id)
            return [summary_to_dict(s) for s in items]

        return self._handle("pending", authorization, meta, run)

    def get(
        self, authorization: str | None, workflow_id: str, meta: RequestMeta | None = None
    ) -> AdapterResponse:
        def run(principal: Principal) -> dict[str, Any]:
            workflow = self._selector.get(workflow_id, principal.tenant_id)
            document = workflow_to_document(workflow)
            document.pop("format", None)
            document["current_approver"] = workflow.current_approver
            document["completion_percentage"] = workflow.completion_percentage
            return document

        return self._handle("get", authorization, meta, run)

    def audit(
        self, authorization: str | None, workflow_id: str, meta: RequestMeta | None = None
    ) -> AdapterResponse:
        def run(principal: Principal) -> list[dict[str, Any]]:
            entries = self._selector.audit(workflow_id, principal.tenant_id)
            return [audit_entry_to_dict(e) for e in entries]

        return self._handle("audit", authorization, meta, run)

    def stats(
        self,
        authorization: str | None,
        window_hours: float | None = None,
        meta: RequestMeta | None = None,
    ) -> AdapterResponse:
        def run(principal: Principal) -> dict[str, Any]:
            window = None
            if window_hours is not None:
                if isinstance(window_hours, bool) or not isinstance(window_hours, (int, float)):
                    raise InvalidInputError("window_hours", "must be a number")
                window = timedelta(hours=window_hours)
            return stats_to_dict(self._selector.stats(principal.tenant_id, window))

        return self._handle("stats", authorization, meta, run)

    # -- real-time ------------------------------------------------------

    def subscribe(
        self,
        authorization: str | None,
        scopes: Iterable[tuple[str, str]] | None = None,
        meta: RequestMeta | None = None,
    ) -> tuple[AdapterResponse, Subscription | None]:
        """Open an event subscription.

        ``scopes`` are ``(kind, value)`` pairs such as ``("user", "u-1")``
        or ``("role", "manager")``; the default is the caller's user and
        tenant scopes.
        """
        opened: list[Subscription] = []

        def run(principal: Principal) -> dict[str, Any]:
            if self._bus is None:
                raise InvalidInputError("subscribe", "real-time events are not enabled")
            allowed = principal.allowed_scopes()
            if scopes is None:
                requested = {
                    Scope.user(principal.tenant_id, principal.user_id),
                    Scope.tenant(principal.tenant_id),
                }
            else:
                requested = set()
                for kind, value in scopes:
                    scope = Scope(_enum(ScopeKind, kind, "scope"), principal.tenant_id, value)
                    if scope not in allowed:
                        raise ScopeNotPermittedError(principal.user_id, str(scope))
                    requested.add(scope)
            subscription = self._bus.subscribe(requested)
            opened.append(subscription)
            return {
                "subscription_id": subscription.subscription_id,
                "scopes": sorted(str(s) for s in requested),
            }

        response = self._handle("subscribe", authorization, meta, run)
        return response, (opened[0] if opened else None)

    # -- plumbing -------------------------------------------------------

    @staticmethod
    def _state(workflow) -> dict[str, Any]:
        return {
            "workflow_id": workflow.workflow_id,
            "status": workflow.status.value,
            "version": workflow.version,
            "current_level": workflow.current_level,
            "current_approver": workflow.current_approver,
        }

    def _handle(
        self,
        operation: str,
        authorization: str | None,
        meta: RequestMeta | None,
        run: Callable[[Principal], Any],
    ) -> AdapterResponse:
        correlation_id = (meta.correlation_id if meta else None) or uuid4().hex
        with LogContext.bind(correlation_id=correlation_id):
            try:
                principal = self._auth.authenticate(authorization)
                with LogContext.bind(actor_id=principal.user_id, tenant_id=principal.tenant_id):
                    data = run(principal)
                logger.debug("adapter_request_completed", extra={"operation": operation})
                return AdapterResponse(True, data=data, correlation_id=correlation_id)
            except BypassEngineError as exc:
                logger.info(
                    "adapter_request_rejected",
                    extra={"operation": operation, "error_code": exc.code},
                )
                return AdapterResponse(
                    False,
                    error={"code": exc.code, "message": str(exc)},
                    correlation_id=correlation_id,
                )
            except Exception:
                logger.exception("adapter_internal_error", extra={"operation": operation})
                return AdapterResponse(
                    False,
                    error={"code": "INTERNAL_ERROR", "message": "internal error"},
                    correlation_id=correlation_id,
                )

"""
EventBus -- real-time fan-out of workflow events to live subscribers.

Responsibility:
    Routes typed events to subscriber groups keyed by scope: one user,
    one tenant (hotel), or one role within a tenant.  Subscribers hold a
    bounded buffer; the publisher never blocks on a slow subscriber.

Architecture position:
    Services.  Implements the coordinator's ``EventPublisher`` protocol.
    Authorisation of subscriptions happens in the adapter; the bus trusts
    the scopes it is given.

Invariants enforced:
    - Best-effort, at-most-once per live subscription: an event matching
      several of a subscription's scopes is delivered once, and a full
      buffer drops the event (counted on the subscription).
    - Events are delivered to each subscription in publish order.
"""

from __future__ import annotations

import itertools
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from bypass_kernel.domain.approval import WorkflowEvent
from bypass_kernel.logging_config import get_logger

logger = get_logger("services.event_bus")


class ScopeKind(str, Enum):
    USER = "user"
    TENANT = "tenant"
    ROLE = "role"


@dataclass(frozen=True)
class Scope:
    kind: ScopeKind
    tenant_id: str
    value: str

    @classmethod
    def user(cls, tenant_id: str, user_id: str) -> Scope:
        return cls(ScopeKind.USER, tenant_id, user_id)

    @classmethod
    def tenant(cls, tenant_id: str) -> Scope:
        return cls(ScopeKind.TENANT, tenant_id, tenant_id)

    @classmethod
    def role(cls, tenant_id: str, role: str) -> Scope:
        return cls(ScopeKind.ROLE, tenant_id, role)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.tenant_id}:{self.value}"


@dataclass(frozen=True)
class Event:
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    scopes: tuple[Scope, ...] = ()


class Subscription:
    """One live subscriber; events are read with ``get`` or ``drain``."""

    def __init__(
        self,
        subscription_id: int,
        scopes: frozenset[Scope],
        buffer_size: int,
        callback: Callable[[Event], None] | None = None,
    ):
        self.subscription_id = subscription_id
        self.scopes = scopes
        self.dropped = 0
        self._callback = callback
        self._buffer: queue.Queue[Event] = queue.Queue(maxsize=buffer_size)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def get(self, timeout: float | None = None) -> Event | None:
        try:
            return self._buffer.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        events: list[Event] = []
        while True:
            try:
                events.append(self._buffer.get_nowait())
            except queue.Empty:
                return events

    def _offer(self, event: Event) -> bool:
        if self._callback is not None:
            self._callback(event)
            return True
        try:
            self._buffer.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            return False

    def _close(self) -> None:
        self._closed.set()


class EventBus:
    """Thread-safe scope-indexed publish/subscribe hub."""

    def __init__(self, buffer_size: int = 256):
        self._buffer_size = buffer_size
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._by_scope: dict[Scope, dict[int, Subscription]] = {}
        self._subscriptions: dict[int, Subscription] = {}

    def subscribe(
        self,
        scopes: Iterable[Scope],
        callback: Callable[[Event], None] | None = None,
    ) -> Subscription:
        scope_set = frozenset(scopes)
        if not scope_set:
            raise ValueError("a subscription needs at least one scope")
        with self._lock:
            subscription = Subscription(
                next(self._ids), scope_set, self._buffer_size, callback
            )
            self._subscriptions[subscription.subscription_id] = subscription
            for scope in scope_set:
                self._by_scope.setdefault(scope, {})[subscription.subscription_id] = subscription
        logger.debug(
            "subscription_opened",
            extra={
                "subscription_id": subscription.subscription_id,
                "scopes": [str(s) for s in scope_set],
            },
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.subscription_id, None)
            for scope in subscription.scopes:
                members = self._by_scope.get(scope)
                if members is not None:
                    members.pop(subscription.subscription_id, None)
                    if not members:
                        del self._by_scope[scope]
        subscription._close()

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: Event) -> int:
        """Deliver ``event`` to every subscription on any of its scopes.

        Returns the number of subscriptions that accepted it.
        """
        with self._lock:
            targets: dict[int, Subscription] = {}
            for scope in event.scopes:
                targets.update(self._by_scope.get(scope, {}))
        delivered = 0
        for subscription in targets.values():
            try:
                if subscription._offer(event):
                    delivered += 1
            except Exception:
                logger.warning(
                    "event_delivery_failed",
                    extra={"subscription_id": subscription.subscription_id, "kind": event.kind},
                    exc_info=True,
                )
        return delivered

    def publish_workflow_event(self, event: WorkflowEvent) -> None:
        scopes = [Scope.tenant(event.tenant_id)]
        scopes.extend(Scope.user(event.tenant_id, u) for u in event.user_ids)
        scopes.extend(Scope.role(event.tenant_id, r) for r in event.roles)
        payload = {
            "workflow_id": event.workflow_id,
            "version": event.version,
            **event.payload,
        }
        delivered = self.publish(Event(event.kind.value, payload, tuple(scopes)))
        logger.debug(
            "workflow_event_published",
            extra={
                "workflow_id": event.workflow_id,
                "kind": event.kind.value,
                "delivered": delivered,
            },
        )

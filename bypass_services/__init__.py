"""
bypass_services -- Outer layer of the approval engine.

Responsibility:
    Notification sinks per channel, the real-time event bus, the external
    request adapter, and the runtime that wires every component from one
    configuration.

Architecture position:
    Services -- composes engines, kernel, config and batch.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        bypass_services/ -> bypass_batch/, bypass_config/, bypass_engines/,
                            bypass_kernel/  (allowed)
        bypass_kernel/   -> bypass_services/ (FORBIDDEN)
        bypass_engines/  -> bypass_services/ (FORBIDDEN)
"""

from bypass_services.adapter import (
    AdapterResponse,
    AuthSettings,
    BypassAdapter,
    Principal,
    RequestMeta,
    TokenAuthenticator,
)
from bypass_services.event_bus import Event, EventBus, Scope, ScopeKind, Subscription
from bypass_services.notifications import (
    ChatSink,
    EmailSink,
    LoggingTransport,
    PushSink,
    RecordingSink,
    SmsSink,
    WebhookSink,
)
from bypass_services.runtime import BypassRuntime, build_runtime

__all__ = [
    "AdapterResponse",
    "AuthSettings",
    "BypassAdapter",
    "BypassRuntime",
    "ChatSink",
    "EmailSink",
    "Event",
    "EventBus",
    "LoggingTransport",
    "Principal",
    "PushSink",
    "RecordingSink",
    "RequestMeta",
    "Scope",
    "ScopeKind",
    "SmsSink",
    "Subscription",
    "TokenAuthenticator",
    "WebhookSink",
    "build_runtime",
]

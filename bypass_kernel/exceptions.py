"""
Typed Exception Hierarchy for the Bypass Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval workflows are driven by several callers at once: humans answering
requests, the timeout scheduler, the notification worker.  Each caller must
react to a failure by its kind, not by its wording:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)
  4. Every exception says whether it is RETRYABLE

Example - WRONG way to handle errors:
    try:
        coordinator.respond(...)
    except Exception as e:
        if "not pending" in str(e):  # FRAGILE - message might change
            show_already_closed()

Example - RIGHT way:
    try:
        coordinator.respond(...)
    except WorkflowNotPendingError as e:
        api_response(code=e.code, status=e.status)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from BypassEngineError:

    BypassEngineError (base)
    |
    +-- InvalidInputError
    +-- NotFoundError
    |   +-- WorkflowNotFoundError
    |   +-- ApproverNotFoundError
    +-- UnauthorisedError
    |   +-- NotCurrentApproverError
    |   +-- AuthenticationError
    |   +-- ScopeNotPermittedError
    +-- PreconditionFailedError
    |   +-- WorkflowNotPendingError
    |   +-- EscalationLimitReachedError
    |   +-- ReminderLimitReachedError
    +-- AlreadyExistsError
    |   +-- DuplicateRequestError
    +-- ConcurrencyError
    |   +-- StaleVersionError
    +-- TransientUnavailableError
    +-- InvariantViolationError
    +-- ImmutabilityViolationError
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Input           | INVALID_INPUT               | Malformed request, decision or filter
----------------|-----------------------------|-----------------------------------------
Lookup          | WORKFLOW_NOT_FOUND          | Workflow id unknown (or other tenant)
                | APPROVER_NOT_FOUND          | Delegatee / explicit escalation user
                |                             | missing or inactive
----------------|-----------------------------|-----------------------------------------
Authorisation   | NOT_CURRENT_APPROVER        | Caller is not the active step assignee
                | UNAUTHENTICATED             | Bearer token missing/invalid/expired
                | SCOPE_NOT_PERMITTED         | Subscription outside caller's scopes
                | UNAUTHORISED                | Caller lacks the role for the action
----------------|-----------------------------|-----------------------------------------
Precondition    | WORKFLOW_NOT_PENDING        | Mutating a non-Pending workflow
                | ESCALATION_LIMIT_REACHED    | escalate() past max escalation level
                | REMINDER_LIMIT_REACHED      | reminded() past max reminders
----------------|-----------------------------|-----------------------------------------
Idempotency     | DUPLICATE_REQUEST           | request id already has a workflow
----------------|-----------------------------|-----------------------------------------
Concurrency     | STALE_VERSION               | CAS lost to a concurrent writer
----------------|-----------------------------|-----------------------------------------
Availability    | TRANSIENT_UNAVAILABLE       | Store or sink unreachable / timed out
----------------|-----------------------------|-----------------------------------------
Integrity       | INVARIANT_VIOLATION         | Commit refused, aggregate inconsistent
                | IMMUTABILITY_VIOLATION      | Audit row modification attempted
----------------|-----------------------------|-----------------------------------------
Startup         | CONFIGURATION_INVALID       | Policy failed validation at load

===============================================================================
DESIGN DECISIONS
===============================================================================

1. WHY code AND retryable AS CLASS ATTRIBUTES?
   They are static per exception type, readable without instantiation,
   and let the adapter and the retry loops branch on the type alone.

2. WHY NO SENSITIVE DATA IN MESSAGES?
   Messages cross the adapter boundary verbatim.  They carry identifiers
   only -- never notes, tokens, or stack traces.
"""


class BypassEngineError(Exception):
    """
    Base exception for all bypass kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BYPASS_ENGINE_ERROR"
    retryable: bool = False


# Input


class InvalidInputError(BypassEngineError):
    """Caller supplied malformed data."""

    code: str = "INVALID_INPUT"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Lookup


class NotFoundError(BypassEngineError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class WorkflowNotFoundError(NotFoundError):
    """Workflow with given ID was not found."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ApproverNotFoundError(NotFoundError):
    """Approver is unknown, inactive, or belongs to another tenant."""

    code: str = "APPROVER_NOT_FOUND"

    def __init__(self, user_id: str, tenant_id: str):
        self.user_id = user_id
        self.tenant_id = tenant_id
        super().__init__(
            f"Approver {user_id} not found or inactive in tenant {tenant_id}"
        )


# Authorisation


class UnauthorisedError(BypassEngineError):
    """Caller is not allowed to perform the action."""

    code: str = "UNAUTHORISED"

    def __init__(self, actor_id: str, action: str):
        self.actor_id = actor_id
        self.action = action
        super().__init__(f"Actor {actor_id} is not permitted to {action}")


class NotCurrentApproverError(UnauthorisedError):
    """Caller is not the assignee of the active step."""

    code: str = "NOT_CURRENT_APPROVER"

    def __init__(self, workflow_id: str, actor_id: str, level: int):
        self.workflow_id = workflow_id
        self.level = level
        super().__init__(actor_id, f"act on level {level} of {workflow_id}")


class AuthenticationError(UnauthorisedError):
    """Bearer token is missing, malformed, expired, or badly signed."""

    code: str = "UNAUTHENTICATED"

    def __init__(self, reason: str):
        self.reason = reason
        BypassEngineError.__init__(self, f"Authentication failed: {reason}")


class ScopeNotPermittedError(UnauthorisedError):
    """Subscription requested a scope the principal cannot see."""

    code: str = "SCOPE_NOT_PERMITTED"

    def __init__(self, actor_id: str, scope: str):
        self.scope = scope
        super().__init__(actor_id, f"subscribe to {scope}")


# Preconditions


class PreconditionFailedError(BypassEngineError):
    """Base exception for state preconditions."""

    code: str = "PRECONDITION_FAILED"


class WorkflowNotPendingError(PreconditionFailedError):
    """Mutation attempted on a workflow that is no longer Pending."""

    code: str = "WORKFLOW_NOT_PENDING"

    def __init__(self, workflow_id: str, status: str):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(f"Workflow {workflow_id} is {status}, not pending")


class EscalationLimitReachedError(PreconditionFailedError):
    """Escalation requested beyond the configured maximum level."""

    code: str = "ESCALATION_LIMIT_REACHED"

    def __init__(self, workflow_id: str, max_level: int):
        self.workflow_id = workflow_id
        self.max_level = max_level
        super().__init__(
            f"Workflow {workflow_id} cannot escalate past level {max_level}"
        )


class ReminderLimitReachedError(PreconditionFailedError):
    """Reminder count is out of sequence or exhausted."""

    code: str = "REMINDER_LIMIT_REACHED"

    def __init__(self, workflow_id: str, sent: int, requested: int):
        self.workflow_id = workflow_id
        self.sent = sent
        self.requested = requested
        super().__init__(
            f"Workflow {workflow_id} has {sent} reminders sent, "
            f"cannot record reminder #{requested}"
        )


# Idempotency


class AlreadyExistsError(BypassEngineError):
    """Base exception for uniqueness conflicts."""

    code: str = "ALREADY_EXISTS"


class DuplicateRequestError(AlreadyExistsError):
    """A workflow already exists for this bypass request."""

    code: str = "DUPLICATE_REQUEST"

    def __init__(self, request_id: str, workflow_id: str | None = None):
        self.request_id = request_id
        self.workflow_id = workflow_id
        super().__init__(f"Request {request_id} already has a workflow")


# Concurrency


class ConcurrencyError(BypassEngineError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    retryable: bool = True


class StaleVersionError(ConcurrencyError):
    """Compare-and-swap lost to a concurrent writer."""

    code: str = "STALE_VERSION"

    def __init__(self, workflow_id: str, expected_version: int):
        self.workflow_id = workflow_id
        self.expected_version = expected_version
        super().__init__(
            f"Workflow {workflow_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


# Availability


class TransientUnavailableError(BypassEngineError):
    """Store or sink is unreachable or timed out."""

    code: str = "TRANSIENT_UNAVAILABLE"
    retryable: bool = True

    def __init__(self, resource: str, reason: str):
        self.resource = resource
        self.reason = reason
        super().__init__(f"{resource} unavailable: {reason}")


# Integrity


class InvariantViolationError(BypassEngineError):
    """A mutation would commit an inconsistent workflow."""

    code: str = "INVARIANT_VIOLATION"

    def __init__(self, workflow_id: str, violations: list[str]):
        self.workflow_id = workflow_id
        self.violations = violations
        super().__init__(
            f"Workflow {workflow_id} violates invariants: {'; '.join(violations)}"
        )


class ImmutabilityViolationError(BypassEngineError):
    """Attempted to modify an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{entity_type} {entity_id}: {reason}")


# Startup


class ConfigurationError(BypassEngineError):
    """Configuration failed validation at load time."""

    code: str = "CONFIGURATION_INVALID"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(
            f"Invalid configuration ({len(errors)} error(s)): {'; '.join(errors)}"
        )

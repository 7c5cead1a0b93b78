"""
WorkflowStore -- persistence of workflow aggregates with compare-and-swap.

Responsibility:
    Typed load/save of ``Workflow`` aggregates.  Every write is a
    compare-and-swap on ``version``; audit entries are appended in the
    same atomic write, so state and audit trail cannot diverge.  Also
    serves the indexed queries the scheduler, the recovery loop, the
    retention sweeper and the read-side selectors need.

Architecture position:
    Kernel > Services -- imperative shell.  Two implementations share
    one contract: ``InMemoryWorkflowStore`` (tests, single process) and
    ``SqlWorkflowStore`` (SQLAlchemy; SQLite or PostgreSQL).

Invariants enforced:
    - version strictly increases on every persisted mutation; a write
      whose expected version is not the stored version is refused.
    - request_id -> workflow_id is unique.
    - Audit entries are append-only and keyed by
      (workflow_id, sequence, position).
    - At most one scheduler replica holds the claim on a workflow per
      lease.

Failure modes:
    - StaleVersionError: CAS lost to a concurrent writer.
    - DuplicateRequestError: insert for a request_id that already has a
      workflow.
    - WorkflowNotFoundError: update of an unknown workflow.
    - TransientUnavailableError: lock or database unavailable / timed out.

Audit relevance:
    ``list_audit`` is the read API of the audit log sink; there is no
    separate audit write path.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, Protocol

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from bypass_kernel.db.engine import session_scope
from bypass_kernel.db.immutability import register_immutability_listeners
from bypass_kernel.domain.approval import (
    TERMINAL_WORKFLOW_STATUSES,
    AuditEntry,
    Workflow,
    WorkflowStatus,
)
from bypass_kernel.exceptions import (
    DuplicateRequestError,
    InvariantViolationError,
    StaleVersionError,
    TransientUnavailableError,
    WorkflowNotFoundError,
)
from bypass_kernel.logging_config import get_logger
from bypass_kernel.models.workflow import WorkflowAuditModel, WorkflowModel

logger = get_logger("services.workflow_store")

DEFAULT_READ_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class WorkflowFilter:
    """Filter for tenant workflow listings; None means no constraint."""

    status: WorkflowStatus | None = None
    assignee_id: str | None = None
    initiator_id: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None

    def matches(self, workflow: Workflow) -> bool:
        created = workflow.created_at or workflow.timing.initiated_at
        if self.status is not None and workflow.status != self.status:
            return False
        if self.assignee_id is not None and workflow.current_approver != self.assignee_id:
            return False
        if self.initiator_id is not None and workflow.initiator_id != self.initiator_id:
            return False
        if self.created_from is not None and created < self.created_from:
            return False
        if self.created_to is not None and created > self.created_to:
            return False
        return True


class WorkflowStore(Protocol):
    """Contract shared by every workflow store implementation."""

    def load_by_id(self, workflow_id: str) -> Workflow | None: ...

    def load_by_request_id(self, request_id: str) -> Workflow | None: ...

    def cas_upsert(self, workflow: Workflow, expected_version: int) -> Workflow: ...

    def list_by_deadline(self, now: datetime, limit: int) -> list[Workflow]: ...

    def claim_expired(
        self, now: datetime, owner: str, lease_ttl: timedelta, limit: int
    ) -> list[Workflow]: ...

    def release_claim(self, workflow_id: str, owner: str) -> None: ...

    def list_pending(
        self, tenant_id: str, filter: WorkflowFilter | None = None
    ) -> list[Workflow]: ...

    def list_workflows(
        self,
        tenant_id: str,
        filter: WorkflowFilter | None = None,
        offset: int = 0,
        limit: int | None = 50,
    ) -> tuple[list[Workflow], int]: ...

    def list_for_tenant(self, tenant_id: str, since: datetime | None = None) -> list[Workflow]: ...

    def list_undelivered(self, limit: int) -> list[Workflow]: ...

    def list_audit(self, workflow_id: str) -> list[AuditEntry]: ...

    def purge_completed_before(self, cutoff: datetime, limit: int) -> int: ...


def _new_audit(workflow: Workflow, expected_version: int) -> list[AuditEntry]:
    return [a for a in workflow.audit if a.sequence > expected_version]


def _check_write(workflow: Workflow, expected_version: int) -> None:
    if workflow.version <= expected_version:
        raise InvariantViolationError(
            workflow.workflow_id,
            [f"version {workflow.version} does not advance past {expected_version}"],
        )


def _created(workflow: Workflow) -> datetime:
    return workflow.created_at or workflow.timing.initiated_at


# =========================================================================
# In-memory implementation
# =========================================================================


@dataclass
class _Entry:
    workflow: Workflow
    claim_owner: str | None = None
    claim_expires_at: datetime | None = None


class InMemoryWorkflowStore:
    """Lock-guarded dictionary store.

    Contract:
        Same observable semantics as ``SqlWorkflowStore``.  Every
        operation holds one process-wide lock for its duration; failing
        to acquire it within ``read_timeout_seconds`` raises
        TransientUnavailableError.
    """

    def __init__(self, read_timeout_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS):
        self._timeout = read_timeout_seconds
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}
        self._by_request: dict[str, str] = {}
        self._audit: dict[str, list[AuditEntry]] = {}

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._timeout):
            raise TransientUnavailableError("workflow_store", "lock acquisition timed out")
        try:
            yield
        finally:
            self._lock.release()

    def load_by_id(self, workflow_id: str) -> Workflow | None:
        with self._locked():
            entry = self._entries.get(workflow_id)
            return entry.workflow if entry else None

    def load_by_request_id(self, request_id: str) -> Workflow | None:
        with self._locked():
            workflow_id = self._by_request.get(request_id)
            return self._entries[workflow_id].workflow if workflow_id else None

    def cas_upsert(self, workflow: Workflow, expected_version: int) -> Workflow:
        _check_write(workflow, expected_version)
        with self._locked():
            entry = self._entries.get(workflow.workflow_id)
            if expected_version == 0:
                existing = self._by_request.get(workflow.request_id)
                if existing is not None:
                    raise DuplicateRequestError(workflow.request_id, existing)
                if entry is not None:
                    raise StaleVersionError(workflow.workflow_id, expected_version)
                self._entries[workflow.workflow_id] = _Entry(workflow)
                self._by_request[workflow.request_id] = workflow.workflow_id
                self._audit[workflow.workflow_id] = list(workflow.audit)
                return workflow

            if entry is None:
                raise WorkflowNotFoundError(workflow.workflow_id)
            if entry.workflow.version != expected_version:
                raise StaleVersionError(workflow.workflow_id, expected_version)
            entry.workflow = workflow
            self._audit[workflow.workflow_id].extend(_new_audit(workflow, expected_version))
            return workflow

    def list_by_deadline(self, now: datetime, limit: int) -> list[Workflow]:
        with self._locked():
            due = [
                e.workflow
                for e in self._entries.values()
                if e.workflow.status == WorkflowStatus.PENDING
                and e.workflow.timing.timeout_at is not None
                and e.workflow.timing.timeout_at <= now
            ]
        due.sort(key=lambda w: (w.timing.timeout_at, w.workflow_id))
        return due[:limit]

    def claim_expired(
        self, now: datetime, owner: str, lease_ttl: timedelta, limit: int
    ) -> list[Workflow]:
        with self._locked():
            candidates = sorted(
                (
                    e
                    for e in self._entries.values()
                    if e.workflow.status == WorkflowStatus.PENDING
                    and e.workflow.timing.timeout_at is not None
                    and e.workflow.timing.timeout_at <= now
                    and (e.claim_owner is None or e.claim_expires_at < now)
                ),
                key=lambda e: (e.workflow.timing.timeout_at, e.workflow.workflow_id),
            )[:limit]
            for entry in candidates:
                entry.claim_owner = owner
                entry.claim_expires_at = now + lease_ttl
            return [e.workflow for e in candidates]

    def release_claim(self, workflow_id: str, owner: str) -> None:
        with self._locked():
            entry = self._entries.get(workflow_id)
            if entry is not None and entry.claim_owner == owner:
                entry.claim_owner = None
                entry.claim_expires_at = None

    def list_pending(
        self, tenant_id: str, filter: WorkflowFilter | None = None
    ) -> list[Workflow]:
        base = filter or WorkflowFilter()
        pending = WorkflowFilter(
            status=WorkflowStatus.PENDING,
            assignee_id=base.assignee_id,
            initiator_id=base.initiator_id,
            created_from=base.created_from,
            created_to=base.created_to,
        )
        items, _ = self.list_workflows(tenant_id, pending, 0, None)
        return items

    def list_workflows(
        self,
        tenant_id: str,
        filter: WorkflowFilter | None = None,
        offset: int = 0,
        limit: int | None = 50,
    ) -> tuple[list[Workflow], int]:
        criteria = filter or WorkflowFilter()
        with self._locked():
            matched = [
                e.workflow
                for e in self._entries.values()
                if e.workflow.tenant_id == tenant_id and criteria.matches(e.workflow)
            ]
        matched.sort(key=lambda w: (_created(w), w.workflow_id), reverse=True)
        end = None if limit is None else offset + limit
        return matched[offset:end], len(matched)

    def list_for_tenant(self, tenant_id: str, since: datetime | None = None) -> list[Workflow]:
        with self._locked():
            items = [
                e.workflow
                for e in self._entries.values()
                if e.workflow.tenant_id == tenant_id
                and (since is None or _created(e.workflow) >= since)
            ]
        items.sort(key=lambda w: (_created(w), w.workflow_id))
        return items

    def list_undelivered(self, limit: int) -> list[Workflow]:
        with self._locked():
            items = [
                e.workflow for e in self._entries.values() if e.workflow.undelivered_count > 0
            ]
        items.sort(key=lambda w: (w.updated_at or _created(w), w.workflow_id))
        return items[:limit]

    def list_audit(self, workflow_id: str) -> list[AuditEntry]:
        with self._locked():
            return sorted(
                self._audit.get(workflow_id, ()),
                key=lambda a: (a.sequence, a.position),
            )

    def purge_completed_before(self, cutoff: datetime, limit: int) -> int:
        with self._locked():
            doomed = sorted(
                (
                    e.workflow
                    for e in self._entries.values()
                    if e.workflow.status in TERMINAL_WORKFLOW_STATUSES
                    and _created(e.workflow) < cutoff
                ),
                key=lambda w: (_created(w), w.workflow_id),
            )[:limit]
            for workflow in doomed:
                del self._entries[workflow.workflow_id]
                self._by_request.pop(workflow.request_id, None)
                self._audit.pop(workflow.workflow_id, None)
            return len(doomed)


# =========================================================================
# SQL implementation
# =========================================================================


def _row_values(workflow: Workflow) -> dict:
    row = WorkflowModel(workflow_id=workflow.workflow_id)
    row.apply(workflow)
    return {
        "request_id": row.request_id,
        "tenant_id": row.tenant_id,
        "initiator_id": row.initiator_id,
        "status": row.status,
        "version": row.version,
        "current_assignee": row.current_assignee,
        "timeout_at": row.timeout_at,
        "undelivered_count": row.undelivered_count,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "completed_at": row.completed_at,
        "document": row.document,
    }


class SqlWorkflowStore:
    """SQLAlchemy-backed store: one row per workflow plus an audit table.

    Contract:
        Each public method runs in its own transaction from
        ``session_factory``.  ``cas_upsert`` is a conditional UPDATE on
        ``version`` (or an INSERT for version 0) plus the audit INSERTs,
        committed atomically.

    Non-goals:
        - Does NOT cache aggregates between calls.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._factory = session_factory
        register_immutability_listeners()

    @contextmanager
    def _scope(self) -> Iterator[Session]:
        try:
            with session_scope(self._factory) as session:
                yield session
        except OperationalError as exc:
            logger.warning(
                "workflow_store_unavailable",
                extra={"error_type": type(exc.orig).__name__ if exc.orig else "OperationalError"},
            )
            raise TransientUnavailableError("workflow_store", "database operation failed") from exc

    def load_by_id(self, workflow_id: str) -> Workflow | None:
        with self._scope() as session:
            row = session.get(WorkflowModel, workflow_id)
            return row.to_workflow() if row else None

    def load_by_request_id(self, request_id: str) -> Workflow | None:
        with self._scope() as session:
            row = session.scalars(
                select(WorkflowModel).where(WorkflowModel.request_id == request_id)
            ).first()
            return row.to_workflow() if row else None

    def cas_upsert(self, workflow: Workflow, expected_version: int) -> Workflow:
        _check_write(workflow, expected_version)
        if expected_version == 0:
            return self._insert(workflow)

        with self._scope() as session:
            result = session.execute(
                update(WorkflowModel)
                .where(
                    WorkflowModel.workflow_id == workflow.workflow_id,
                    WorkflowModel.version == expected_version,
                )
                .values(**_row_values(workflow))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                exists = session.scalar(
                    select(func.count())
                    .select_from(WorkflowModel)
                    .where(WorkflowModel.workflow_id == workflow.workflow_id)
                )
                if not exists:
                    raise WorkflowNotFoundError(workflow.workflow_id)
                raise StaleVersionError(workflow.workflow_id, expected_version)
            session.add_all(
                WorkflowAuditModel.from_entry(workflow.workflow_id, entry)
                for entry in _new_audit(workflow, expected_version)
            )
        return workflow

    def _insert(self, workflow: Workflow) -> Workflow:
        try:
            with self._scope() as session:
                session.add(WorkflowModel.from_workflow(workflow))
                session.flush()
                session.add_all(
                    WorkflowAuditModel.from_entry(workflow.workflow_id, entry)
                    for entry in workflow.audit
                )
        except IntegrityError as exc:
            existing = self.load_by_request_id(workflow.request_id)
            if existing is not None:
                raise DuplicateRequestError(workflow.request_id, existing.workflow_id) from exc
            raise StaleVersionError(workflow.workflow_id, 0) from exc
        return workflow

    def list_by_deadline(self, now: datetime, limit: int) -> list[Workflow]:
        with self._scope() as session:
            rows = session.scalars(
                select(WorkflowModel)
                .where(
                    WorkflowModel.status == WorkflowStatus.PENDING.value,
                    WorkflowModel.timeout_at.is_not(None),
                    WorkflowModel.timeout_at <= now,
                )
                .order_by(WorkflowModel.timeout_at, WorkflowModel.workflow_id)
                .limit(limit)
            ).all()
            return [r.to_workflow() for r in rows]

    def claim_expired(
        self, now: datetime, owner: str, lease_ttl: timedelta, limit: int
    ) -> list[Workflow]:
        claimable = or_(
            WorkflowModel.claim_owner.is_(None),
            WorkflowModel.claim_expires_at < now,
        )
        due = and_(
            WorkflowModel.status == WorkflowStatus.PENDING.value,
            WorkflowModel.timeout_at.is_not(None),
            WorkflowModel.timeout_at <= now,
        )
        claimed: list[Workflow] = []
        with self._scope() as session:
            ids = session.scalars(
                select(WorkflowModel.workflow_id)
                .where(due, claimable)
                .order_by(WorkflowModel.timeout_at, WorkflowModel.workflow_id)
                .limit(limit)
            ).all()
            for workflow_id in ids:
                # Guarded per-row update: another replica may claim in between.
                result = session.execute(
                    update(WorkflowModel)
                    .where(WorkflowModel.workflow_id == workflow_id, due, claimable)
                    .values(claim_owner=owner, claim_expires_at=now + lease_ttl)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    row = session.get(WorkflowModel, workflow_id)
                    claimed.append(row.to_workflow())
        return claimed

    def release_claim(self, workflow_id: str, owner: str) -> None:
        with self._scope() as session:
            session.execute(
                update(WorkflowModel)
                .where(
                    WorkflowModel.workflow_id == workflow_id,
                    WorkflowModel.claim_owner == owner,
                )
                .values(claim_owner=None, claim_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    def _filtered(self, tenant_id: str, criteria: WorkflowFilter):
        stmt = select(WorkflowModel).where(WorkflowModel.tenant_id == tenant_id)
        if criteria.status is not None:
            stmt = stmt.where(WorkflowModel.status == criteria.status.value)
        if criteria.assignee_id is not None:
            stmt = stmt.where(WorkflowModel.current_assignee == criteria.assignee_id)
        if criteria.initiator_id is not None:
            stmt = stmt.where(WorkflowModel.initiator_id == criteria.initiator_id)
        if criteria.created_from is not None:
            stmt = stmt.where(WorkflowModel.created_at >= criteria.created_from)
        if criteria.created_to is not None:
            stmt = stmt.where(WorkflowModel.created_at <= criteria.created_to)
        return stmt

    def list_pending(
        self, tenant_id: str, filter: WorkflowFilter | None = None
    ) -> list[Workflow]:
        base = filter or WorkflowFilter()
        pending = WorkflowFilter(
            status=WorkflowStatus.PENDING,
            assignee_id=base.assignee_id,
            initiator_id=base.initiator_id,
            created_from=base.created_from,
            created_to=base.created_to,
        )
        items, _ = self.list_workflows(tenant_id, pending, 0, None)
        return items

    def list_workflows(
        self,
        tenant_id: str,
        filter: WorkflowFilter | None = None,
        offset: int = 0,
        limit: int | None = 50,
    ) -> tuple[list[Workflow], int]:
        stmt = self._filtered(tenant_id, filter or WorkflowFilter())
        with self._scope() as session:
            total = session.scalar(select(func.count()).select_from(stmt.subquery()))
            page = stmt.order_by(
                WorkflowModel.created_at.desc(), WorkflowModel.workflow_id.desc()
            ).offset(offset)
            if limit is not None:
                page = page.limit(limit)
            rows = session.scalars(page).all()
            return [r.to_workflow() for r in rows], int(total or 0)

    def list_for_tenant(self, tenant_id: str, since: datetime | None = None) -> list[Workflow]:
        stmt = select(WorkflowModel).where(WorkflowModel.tenant_id == tenant_id)
        if since is not None:
            stmt = stmt.where(WorkflowModel.created_at >= since)
        with self._scope() as session:
            rows = session.scalars(
                stmt.order_by(WorkflowModel.created_at, WorkflowModel.workflow_id)
            ).all()
            return [r.to_workflow() for r in rows]

    def list_undelivered(self, limit: int) -> list[Workflow]:
        with self._scope() as session:
            rows = session.scalars(
                select(WorkflowModel)
                .where(WorkflowModel.undelivered_count > 0)
                .order_by(WorkflowModel.updated_at, WorkflowModel.workflow_id)
                .limit(limit)
            ).all()
            return [r.to_workflow() for r in rows]

    def list_audit(self, workflow_id: str) -> list[AuditEntry]:
        with self._scope() as session:
            rows = session.scalars(
                select(WorkflowAuditModel)
                .where(WorkflowAuditModel.workflow_id == workflow_id)
                .order_by(WorkflowAuditModel.sequence, WorkflowAuditModel.position)
            ).all()
            return [r.to_entry() for r in rows]

    def purge_completed_before(self, cutoff: datetime, limit: int) -> int:
        terminal = [s.value for s in TERMINAL_WORKFLOW_STATUSES]
        with self._scope() as session:
            ids = session.scalars(
                select(WorkflowModel.workflow_id)
                .where(
                    WorkflowModel.status.in_(terminal),
                    WorkflowModel.created_at < cutoff,
                )
                .order_by(WorkflowModel.created_at, WorkflowModel.workflow_id)
                .limit(limit)
            ).all()
            if not ids:
                return 0
            session.execute(
                delete(WorkflowAuditModel).where(WorkflowAuditModel.workflow_id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            session.execute(
                delete(WorkflowModel)
                .where(WorkflowModel.workflow_id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            return len(ids)

"""
ApproverDirectory -- tenant-scoped lookup of users who can approve bypasses.

Responsibility:
    Answers ``find_approver(tenant, role, exclude)``: the most recently
    active user whose role ranks at or above ``role``, falling back to the
    tenant's designated admin role.  Also validates delegatees and
    explicit escalation targets.

Architecture position:
    Kernel > Services.  The coordinator calls it through the
    ``ApplyContext.resolve_approver`` callable so the pure transition
    functions never see the directory itself.

Invariants enforced:
    - Roles are compared by hierarchy rank, never by name.
    - Inactive users and users of other tenants are never returned.

Failure modes:
    - ``find_approver`` returns None when nobody qualifies; the caller
      records an ``approver_unavailable`` warning.
    - ``require_active`` raises ApproverNotFoundError.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Protocol

from bypass_kernel.domain.roles import RoleHierarchy
from bypass_kernel.exceptions import ApproverNotFoundError
from bypass_kernel.logging_config import get_logger

logger = get_logger("services.approver_directory")


@dataclass(frozen=True)
class Approver:
    user_id: str
    tenant_id: str
    role: str
    active: bool = True
    last_active_at: datetime | None = None


class ApproverDirectory(Protocol):
    def find_approver(
        self, tenant_id: str, role: str, exclude: frozenset[str] = frozenset()
    ) -> str | None: ...

    def get(self, tenant_id: str, user_id: str) -> Approver | None: ...

    def require_active(self, tenant_id: str, user_id: str) -> Approver: ...

    def touch(self, tenant_id: str, user_id: str, at: datetime) -> None: ...


class InMemoryApproverDirectory:
    """
    Thread-safe in-memory approver directory.

    Contract:
        Holds one ``Approver`` per (tenant, user).  Lookups rank candidates
        by ``last_active_at`` descending, then by ``user_id`` for a stable
        order.

    Non-goals:
        - Does NOT authenticate users; identity comes from the adapter.
    """

    def __init__(self, hierarchy: RoleHierarchy, approvers: Iterable[Approver] = ()):
        self._hierarchy = hierarchy
        self._lock = threading.Lock()
        self._approvers: dict[tuple[str, str], Approver] = {}
        for approver in approvers:
            self.upsert(approver)

    def upsert(self, approver: Approver) -> None:
        with self._lock:
            self._approvers[(approver.tenant_id, approver.user_id)] = approver

    def deactivate(self, tenant_id: str, user_id: str) -> None:
        with self._lock:
            current = self._approvers.get((tenant_id, user_id))
            if current is not None:
                self._approvers[(tenant_id, user_id)] = replace(current, active=False)

    def touch(self, tenant_id: str, user_id: str, at: datetime) -> None:
        """Record activity, which makes the user preferred for new steps."""
        with self._lock:
            current = self._approvers.get((tenant_id, user_id))
            if current is not None:
                self._approvers[(tenant_id, user_id)] = replace(current, last_active_at=at)

    def get(self, tenant_id: str, user_id: str) -> Approver | None:
        with self._lock:
            return self._approvers.get((tenant_id, user_id))

    def require_active(self, tenant_id: str, user_id: str) -> Approver:
        approver = self.get(tenant_id, user_id)
        if approver is None or not approver.active:
            raise ApproverNotFoundError(user_id, tenant_id)
        return approver

    def find_approver(
        self, tenant_id: str, role: str, exclude: frozenset[str] = frozenset()
    ) -> str | None:
        with self._lock:
            candidates = [
                a
                for a in self._approvers.values()
                if a.tenant_id == tenant_id and a.active and a.user_id not in exclude
            ]

        ranked = [a for a in candidates if self._hierarchy.outranks_or_equals(a.role, role)]
        if not ranked:
            ranked = [
                a for a in candidates if a.role == self._hierarchy.admin_fallback_role
            ]
            if ranked:
                logger.info(
                    "approver_admin_fallback",
                    extra={"tenant_id": tenant_id, "required_role": role},
                )
        if not ranked:
            return None
        ranked.sort(key=lambda a: a.user_id)
        ranked.sort(
            key=lambda a: a.last_active_at.timestamp() if a.last_active_at else float("-inf"),
            reverse=True,
        )
        return ranked[0].user_id

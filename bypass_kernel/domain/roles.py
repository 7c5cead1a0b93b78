"""
Role hierarchy -- explicit total order on approver roles.

Roles are compared by rank only; string comparison of role names is
never used to decide authority.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RoleHierarchy:
    """
    Total order on approver roles, lowest authority first.

    Contract:
        ``roles`` is non-empty and duplicate-free (checked at config
        validation).  ``admin_fallback_role`` sits outside the order and is
        only used when no ranked approver exists.

    Guarantees:
        - ``rank`` is stable and 0-based.
    """

    roles: tuple[str, ...]
    admin_fallback_role: str = "admin"

    def __post_init__(self) -> None:
        if not self.roles:
            raise ValueError("Role hierarchy must contain at least one role")
        if len(set(self.roles)) != len(self.roles):
            raise ValueError("Role hierarchy contains duplicate roles")

    def __contains__(self, role: object) -> bool:
        return role in self.roles

    def rank(self, role: str) -> int:
        try:
            return self.roles.index(role)
        except ValueError:
            raise KeyError(f"Unknown role: {role}") from None

    def outranks_or_equals(self, role: str, required: str) -> bool:
        if role not in self.roles:
            return False
        return self.rank(role) >= self.rank(required)

    def sort_key(self, role: str) -> int:
        # Unknown roles sort first, as the lowest authority
        return self.rank(role) if role in self.roles else -1

"""Tests for approver lookup and the role hierarchy it ranks by."""

import pytest

from bypass_kernel.domain.roles import RoleHierarchy
from bypass_kernel.exceptions import ApproverNotFoundError
from conftest import INITIATOR, OTHER_TENANT, START, TENANT


class TestRoleHierarchy:

    def test_rejects_empty_and_duplicate_orders(self):
        with pytest.raises(ValueError):
            RoleHierarchy(())
        with pytest.raises(ValueError):
            RoleHierarchy(("manager", "director", "manager"))

    def test_ranks_by_position(self, role_hierarchy):
        assert role_hierarchy.outranks_or_equals("director", "manager")
        assert role_hierarchy.outranks_or_equals("manager", "manager")
        assert not role_hierarchy.outranks_or_equals("manager", "supervisor")
        assert not role_hierarchy.outranks_or_equals("admin", "manager")

    def test_unknown_roles_sort_lowest(self, role_hierarchy):
        assert role_hierarchy.sort_key("concierge") == -1
        assert sorted(["owner", "concierge", "manager"], key=role_hierarchy.sort_key) == [
            "concierge",
            "manager",
            "owner",
        ]
        with pytest.raises(KeyError):
            role_hierarchy.rank("concierge")


class TestFindApprover:

    def test_most_recently_active_first(self, directory):
        assert directory.find_approver(TENANT, "manager") == "m1"

    def test_excluded_users_are_skipped(self, directory):
        assert directory.find_approver(TENANT, "manager", frozenset({"m1"})) == "m2"

    def test_higher_ranks_qualify(self, directory):
        assert directory.find_approver(TENANT, "director") == "d1"

        directory.touch(TENANT, "o1", START)

        assert directory.find_approver(TENANT, "director") == "o1"

    def test_admin_fallback(self, directory, captured_logs):
        directory.deactivate(TENANT, "o1")

        assert directory.find_approver(TENANT, "owner") == "a1"
        logged = next(r for r in captured_logs() if r["message"] == "approver_admin_fallback")
        assert logged["required_role"] == "owner"

    def test_nobody_qualifies(self, directory):
        for user_id in ("o1", "a1"):
            directory.deactivate(TENANT, user_id)

        assert directory.find_approver(TENANT, "owner") is None

    def test_other_tenant_has_no_approvers(self, directory):
        assert directory.find_approver(OTHER_TENANT, "manager") is None


class TestRequireActive:

    def test_active_user(self, directory):
        assert directory.require_active(TENANT, "s1").role == "supervisor"

    @pytest.mark.parametrize("user_id", [INITIATOR, "nobody"])
    def test_unknown_user(self, directory, user_id):
        with pytest.raises(ApproverNotFoundError) as exc_info:
            directory.require_active(TENANT, user_id)
        assert exc_info.value.code == "APPROVER_NOT_FOUND"

    def test_inactive_user(self, directory):
        directory.deactivate(TENANT, "m2")

        with pytest.raises(ApproverNotFoundError):
            directory.require_active(TENANT, "m2")

"""Unit tests for iam/scopes.py -- wildcard matching and the scope registry.

Covers:
- exact, global-wildcard and namespace-wildcard grants
- namespace comparison is whole-word (no prefix bleed)
- is_admin() only for "*" and "admin:*"
- group lookup, registry introspection and wildcard expansion
"""

import pytest

from iam import scopes


class TestHasScope:
    @pytest.mark.parametrize(
        "granted, required",
        [
            (["users:read"], "users:read"),
            (["*"], "users:delete"),
            (["users:*"], "users:delete"),
            (["jobs:read", "users:*"], "users:invite"),
        ],
    )
    def test_granted(self, granted, required):
        assert scopes.has_scope(granted, required)

    @pytest.mark.parametrize(
        "granted, required",
        [
            ([], "users:read"),
            (["users:read"], "users:write"),
            (["users:*"], "users_admin:read"),
            (["user:*"], "users:read"),
            (["admin:read"], "admin:write"),
        ],
    )
    def test_denied(self, granted, required):
        assert not scopes.has_scope(granted, required)

    def test_any_and_all(self):
        granted = ["jobs:read", "candidates:*"]
        assert scopes.has_any_scope(granted, "users:read", "candidates:write")
        assert not scopes.has_any_scope(granted, "users:read", "offers:read")
        assert scopes.has_all_scopes(granted, "jobs:read", "candidates:delete")
        assert not scopes.has_all_scopes(granted, "jobs:read", "jobs:write")

    def test_all_scopes_of_nothing_is_true(self):
        assert scopes.has_all_scopes([], *[])


class TestIsAdmin:
    def test_wildcards_are_admin(self):
        assert scopes.is_admin(["*"])
        assert scopes.is_admin(["jobs:read", "admin:*"])

    def test_partial_admin_is_not_admin(self):
        assert not scopes.is_admin(["admin:read", "admin:write"])
        assert not scopes.is_admin(["users:*"])


class TestRegistry:
    def test_default_group_is_viewer(self):
        assert scopes.get_scopes_by_group(scopes.DEFAULT_GROUP) == [
            "users:read",
            "roles:read",
            "tenants:read",
            "reports:view",
        ]

    def test_unknown_group_is_empty(self):
        assert scopes.get_scopes_by_group("nope") == []
        assert not scopes.is_known_group("nope")

    def test_group_copy_is_independent(self):
        group = scopes.get_scopes_by_group("super_admin")
        group.append("jobs:read")
        assert scopes.get_scopes_by_group("super_admin") == ["*"]

    def test_available_groups_sorted(self):
        groups = scopes.get_available_groups()
        assert groups == sorted(groups)
        assert {"super_admin", "viewer", "recruiter"} <= set(groups)

    def test_validate_scope(self):
        assert scopes.validate_scope("*")
        assert scopes.validate_scope("users:read")
        assert scopes.validate_scope("jobs:*")
        assert not scopes.validate_scope("users:fly")

    def test_common_and_domain_partition(self):
        assert scopes.is_common_scope("users:read")
        assert not scopes.is_domain_scope("users:read")
        assert scopes.is_domain_scope("jobs:read")
        assert set(scopes.get_common_scopes()).isdisjoint(scopes.get_domain_scopes())

    def test_descriptions_and_categories(self):
        assert scopes.get_scope_description("users:invite") == "Invite new users"
        assert scopes.get_scope_description("nope:nope") == "No description available"
        assert scopes.get_scope_category("users:read") == "Users"
        assert scopes.get_scope_category("nope:nope") == "Unknown"
        assert "users:read" in scopes.get_categories()["Users"]

    def test_expand_wildcard(self):
        expanded = scopes.expand_wildcard_scope("users:*")
        assert "users:read" in expanded
        assert all(s.startswith("users:") for s in expanded)
        assert scopes.expand_wildcard_scope("users:read") == ["users:read"]
        assert len(scopes.expand_wildcard_scope("*")) == len(scopes.get_all_scopes())

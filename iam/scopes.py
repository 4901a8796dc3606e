"""
iam/scopes.py -- Scope vocabulary, predefined groups, and wildcard matching.

A scope is a permission string "namespace:action" (e.g. "users:read").
Two wildcard forms exist:
  "*"       -- every permission, in every namespace.
  "ns:*"    -- every action within namespace "ns".

Matching splits on the first ':' and compares whole namespaces. "users:*"
grants "users:read" but never "users_admin:read" -- no substring matching.

The vocabulary has two halves:
  common  -- platform administration (users, roles, tenants, api keys, ...).
  domain  -- the applicant-tracking product surface (jobs, candidates, ...).

Groups are named scope bundles used as invitation templates and as the
default grant for new accounts ("viewer").

Layer rule: pure data + functions. No imports from the rest of the project.
"""

from __future__ import annotations

WILDCARD = "*"
DEFAULT_GROUP = "viewer"

# ---------------------------------------------------------------------------
# Vocabulary -- category -> {scope: description}
# ---------------------------------------------------------------------------

_COMMON_CATEGORIES: dict[str, dict[str, str]] = {
    "Administration": {
        "*": "Full access to every resource and action",
        "admin:*": "Full administrative access",
        "admin:read": "Read administrative data",
        "admin:write": "Modify administrative data",
    },
    "Users": {
        "users:*": "Full access to user management",
        "users:read": "View users",
        "users:write": "Create and update users",
        "users:delete": "Delete users",
        "users:invite": "Invite new users",
    },
    "Roles": {
        "roles:*": "Full access to role management",
        "roles:read": "View roles and scopes",
        "roles:write": "Create and update roles",
        "roles:delete": "Delete roles",
        "roles:assign": "Assign roles to users",
    },
    "Tenants": {
        "tenants:*": "Full access to tenant management",
        "tenants:read": "View tenant information",
        "tenants:write": "Update tenant information",
        "tenants:delete": "Delete tenants",
        "tenants:config": "Configure tenant settings",
    },
    "API Keys": {
        "api_keys:*": "Full access to API key management",
        "api_keys:read": "View API keys",
        "api_keys:write": "Create and update API keys",
        "api_keys:delete": "Delete API keys",
        "api_keys:revoke": "Revoke API keys",
    },
    "Settings": {
        "settings:*": "Full access to settings",
        "settings:read": "View settings",
        "settings:write": "Modify settings",
    },
    "Audit": {
        "audit:*": "Full access to audit logs",
        "audit:read": "View audit logs",
        "audit:export": "Export audit logs",
    },
    "Reports & Analytics": {
        "reports:*": "Full access to reports",
        "reports:view": "View reports",
        "reports:export": "Export reports",
        "reports:create": "Create custom reports",
        "analytics:dashboard": "View the analytics dashboard",
    },
    "Integrations": {
        "integrations:*": "Full access to integrations",
        "integrations:read": "View integrations",
        "integrations:write": "Configure integrations",
        "integrations:delete": "Remove integrations",
        "integrations:test": "Test integration connections",
    },
    "Notifications": {
        "notifications:*": "Full access to notifications",
        "notifications:read": "View notifications",
        "notifications:send": "Send notifications",
        "notifications:write": "Configure notification rules",
    },
    "Templates": {
        "templates:*": "Full access to templates",
        "templates:read": "View templates",
        "templates:write": "Create and update templates",
        "templates:delete": "Delete templates",
    },
}

_DOMAIN_CATEGORIES: dict[str, dict[str, str]] = {
    "Jobs": {
        "jobs:*": "Full access to job postings",
        "jobs:read": "View job postings",
        "jobs:write": "Create and update job postings",
        "jobs:delete": "Delete job postings",
        "jobs:publish": "Publish job postings",
        "jobs:archive": "Archive job postings",
    },
    "Candidates": {
        "candidates:*": "Full access to candidates",
        "candidates:read": "View candidates",
        "candidates:write": "Create and update candidates",
        "candidates:delete": "Delete candidates",
        "candidates:export": "Export candidate data",
        "candidates:import": "Import candidate data",
    },
    "Applications": {
        "applications:*": "Full access to applications",
        "applications:read": "View applications",
        "applications:write": "Create and update applications",
        "applications:delete": "Delete applications",
        "applications:review": "Review applications",
        "applications:approve": "Approve or reject applications",
        "applications:assign": "Assign applications to reviewers",
    },
    "Interviews": {
        "interviews:*": "Full access to interviews",
        "interviews:read": "View interviews",
        "interviews:write": "Create and update interviews",
        "interviews:delete": "Delete interviews",
        "interviews:schedule": "Schedule interviews",
        "interviews:conduct": "Conduct interviews and submit feedback",
    },
    "Offers": {
        "offers:*": "Full access to offers",
        "offers:read": "View offers",
        "offers:write": "Create and update offers",
        "offers:delete": "Delete offers",
        "offers:approve": "Approve offers",
        "offers:send": "Send offers to candidates",
    },
    "Resumes": {
        "resumes:*": "Full access to resumes",
        "resumes:read": "View resumes",
        "resumes:write": "Create and update resumes",
        "resumes:delete": "Delete resumes",
        "resumes:publish": "Publish resumes",
        "resumes:own": "Manage own resume",
        "resumes:search": "Search the resume database",
        "resumes:export": "Export resumes",
    },
}

# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

_COMMON_GROUPS: dict[str, list[str]] = {
    "super_admin": ["*"],
    "platform_admin": ["admin:*", "users:*", "roles:*", "tenants:*", "settings:*", "audit:read", "api_keys:*"],
    "tenant_admin": ["users:*", "roles:*", "settings:*", "api_keys:*", "tenants:read", "tenants:config"],
    "user_manager": ["users:*", "roles:read", "roles:assign", "users:invite"],
    "analyst": ["reports:*", "analytics:dashboard", "audit:read"],
    "api_admin": ["api_keys:*", "integrations:*"],
    "settings_admin": ["settings:*", "tenants:config", "templates:*", "notifications:*"],
    "auditor": ["audit:read", "users:read", "roles:read", "tenants:read"],
    "viewer": ["users:read", "roles:read", "tenants:read", "reports:view"],
}

_DOMAIN_GROUPS: dict[str, list[str]] = {
    "recruiter": [
        "jobs:read",
        "jobs:write",
        "candidates:*",
        "applications:*",
        "interviews:*",
        "resumes:*",
        "reports:view",
    ],
    "senior_recruiter": [
        "jobs:*",
        "candidates:*",
        "applications:*",
        "interviews:*",
        "resumes:*",
        "offers:read",
        "offers:write",
        "reports:*",
    ],
    "hiring_manager": [
        "jobs:read",
        "candidates:read",
        "applications:read",
        "applications:review",
        "applications:approve",
        "interviews:read",
        "interviews:schedule",
        "resumes:read",
        "resumes:search",
        "offers:read",
        "offers:approve",
        "reports:view",
    ],
    "interviewer": [
        "jobs:read",
        "candidates:read",
        "applications:read",
        "applications:review",
        "interviews:read",
        "interviews:conduct",
        "resumes:read",
    ],
    "candidate": ["resumes:own", "applications:write", "applications:read", "jobs:read"],
    "resume_manager": ["resumes:*", "candidates:read", "applications:read", "jobs:read"],
    "resume_reviewer": ["resumes:read", "resumes:search", "candidates:read", "jobs:read"],
    "hr_admin": [
        "jobs:*",
        "candidates:*",
        "applications:*",
        "interviews:*",
        "offers:*",
        "resumes:*",
        "users:read",
        "reports:*",
    ],
}

_CATEGORIES: dict[str, dict[str, str]] = {**_COMMON_CATEGORIES, **_DOMAIN_CATEGORIES}
_GROUPS: dict[str, list[str]] = {**_COMMON_GROUPS, **_DOMAIN_GROUPS}

_SCOPE_TO_CATEGORY: dict[str, str] = {
    scope: category for category, scopes in _CATEGORIES.items() for scope in scopes
}
_COMMON_SCOPES = frozenset(s for scopes in _COMMON_CATEGORIES.values() for s in scopes)
_DOMAIN_SCOPES = frozenset(s for scopes in _DOMAIN_CATEGORIES.values() for s in scopes)


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def _namespace(scope: str) -> str:
    return scope.split(":", 1)[0]


def has_scope(granted: list[str], required: str) -> bool:
    """Return True if the granted list satisfies the required scope.

    A grant satisfies a requirement when it is identical, when it is "*",
    or when it is "ns:*" and the requirement's namespace is exactly "ns".
    """
    required_ns = _namespace(required)
    for scope in granted:
        if scope == required or scope == WILDCARD:
            return True
        if scope.endswith(":*") and scope[:-2] == required_ns:
            return True
    return False


def has_any_scope(granted: list[str], *required: str) -> bool:
    return any(has_scope(granted, r) for r in required)


def has_all_scopes(granted: list[str], *required: str) -> bool:
    return all(has_scope(granted, r) for r in required)


def is_admin(granted: list[str]) -> bool:
    """Return True for holders of "*" or "admin:*".

    Checked verbatim: a holder of "admin:read" is not an admin.
    """
    return WILDCARD in granted or "admin:*" in granted


# ---------------------------------------------------------------------------
# Registry introspection
# ---------------------------------------------------------------------------


def get_scopes_by_group(group: str) -> list[str]:
    """Return a copy of the group's scopes, or [] for an unknown group."""
    return list(_GROUPS.get(group, []))


def get_available_groups() -> list[str]:
    return sorted(_GROUPS)


def is_known_group(group: str) -> bool:
    return group in _GROUPS


def get_scope_description(scope: str) -> str:
    category = _SCOPE_TO_CATEGORY.get(scope)
    if category is None:
        return "No description available"
    return _CATEGORIES[category][scope]


def get_all_scopes() -> list[str]:
    return list(_SCOPE_TO_CATEGORY)


def get_common_scopes() -> list[str]:
    return [s for s in _SCOPE_TO_CATEGORY if s in _COMMON_SCOPES]


def get_domain_scopes() -> list[str]:
    return [s for s in _SCOPE_TO_CATEGORY if s in _DOMAIN_SCOPES]


def get_categories() -> dict[str, list[str]]:
    """Return category name -> scopes, in registry order."""
    return {category: list(scopes) for category, scopes in _CATEGORIES.items()}


def validate_scope(scope: str) -> bool:
    """Return True if scope is "*" or a registered scope."""
    return scope == WILDCARD or scope in _SCOPE_TO_CATEGORY


def is_common_scope(scope: str) -> bool:
    return scope in _COMMON_SCOPES


def is_domain_scope(scope: str) -> bool:
    return scope in _DOMAIN_SCOPES


def get_scope_category(scope: str) -> str:
    return _SCOPE_TO_CATEGORY.get(scope, "Unknown")


def expand_wildcard_scope(scope: str) -> list[str]:
    """Expand a wildcard into the registered scopes it covers.

    Used for display only. Matching never expands; has_scope() evaluates
    wildcards directly so scopes added later are covered too.
    """
    if scope == WILDCARD:
        return get_all_scopes()
    if not scope.endswith(":*"):
        return [scope]
    prefix = scope[:-1]  # "ns:"
    return [s for s in _SCOPE_TO_CATEGORY if s.startswith(prefix)]

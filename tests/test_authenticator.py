"""
tests/test_authenticator.py -- Tests for iam/dependencies.py.

Covers:
  - API key accepted from Authorization (Bearer / X-API-Key scheme), the
    X-API-Key header and the api_key query parameter
  - access JWT accepted from the Authorization header and the access cookie
  - 401 envelope codes for missing, malformed and rejected credentials
  - scope guard factories raise 403 with the missing scope(s) in the detail
"""

from __future__ import annotations

import pytest
from fastapi import HTTPException

from iam.dependencies import (
    require_admin,
    require_admin_or_scope,
    require_all_scopes,
    require_any_scope,
    require_scope,
)
from iam.models import AuthContext

SCOPES_ME = "/api/v1/scopes/me"


@pytest.fixture(autouse=True)
def _clear_cookies(api_client):
    yield
    api_client.client.cookies.clear()


@pytest.fixture(scope="module")
def reader_key(api_client):
    created = api_client.engine.api_keys.create_api_key(api_client.tenant.id, "reader", ["jobs:read"])
    return created.key


# ---------------------------------------------------------------------------
# API key path
# ---------------------------------------------------------------------------


class TestApiKeyPath:
    def test_bearer_scheme(self, api_client, reader_key):
        resp = api_client.client.get(SCOPES_ME, headers={"Authorization": f"Bearer {reader_key}"})
        assert resp.status_code == 200
        assert resp.json() == ["jobs:read"]

    def test_x_api_key_scheme(self, api_client, reader_key):
        resp = api_client.client.get(SCOPES_ME, headers={"Authorization": f"X-API-Key {reader_key}"})
        assert resp.status_code == 200

    def test_x_api_key_header(self, api_client, reader_key):
        resp = api_client.client.get(SCOPES_ME, headers={"X-API-Key": reader_key})
        assert resp.status_code == 200

    def test_query_parameter(self, api_client, reader_key):
        resp = api_client.client.get(SCOPES_ME, params={"api_key": reader_key})
        assert resp.status_code == 200

    def test_unknown_key_is_rejected(self, api_client):
        resp = api_client.client.get(SCOPES_ME, headers={"X-API-Key": "tenantgate_live_" + "0" * 64})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "api_key_invalid"

    def test_revoked_key_is_rejected(self, api_client):
        engine = api_client.engine
        created = engine.api_keys.create_api_key(api_client.tenant.id, "short-lived", ["jobs:read"])
        engine.api_keys.revoke_api_key(created.api_key.id, api_client.tenant.id)
        resp = api_client.client.get(SCOPES_ME, headers={"X-API-Key": created.key})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "api_key_revoked"

    def test_key_without_user_has_no_me(self, api_client, reader_key):
        resp = api_client.client.get("/api/v1/auth/me", headers={"X-API-Key": reader_key})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_user"


# ---------------------------------------------------------------------------
# Token path
# ---------------------------------------------------------------------------


class TestTokenPath:
    def test_bearer_jwt(self, api_client):
        resp = api_client.client.get(SCOPES_ME, headers=api_client.headers)
        assert resp.status_code == 200
        assert resp.json() == ["*"]

    @pytest.mark.parametrize("scheme", ["bearer", "BEARER"])
    def test_bearer_scheme_case_insensitive(self, api_client, scheme):
        token = api_client.headers["Authorization"].split(" ", 1)[1]
        resp = api_client.client.get(SCOPES_ME, headers={"Authorization": f"{scheme} {token}"})
        assert resp.status_code == 200
        assert resp.json() == ["*"]

    def test_access_cookie(self, api_client):
        token = api_client.headers["Authorization"].split(" ", 1)[1]
        api_client.client.cookies.set("access_token", token)
        resp = api_client.client.get(SCOPES_ME)
        assert resp.status_code == 200

    def test_missing_credentials(self, api_client):
        resp = api_client.client.get(SCOPES_ME)
        assert resp.status_code == 401
        assert resp.json() == {"error": {"code": "unauthorized", "message": "Authentication required"}}

    def test_garbage_token(self, api_client):
        resp = api_client.client.get(SCOPES_ME, headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_returns_user_and_tenant(self, api_client):
        resp = api_client.client.get("/api/v1/auth/me", headers=api_client.headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["user"]["id"] == api_client.admin.id
        assert data["tenant"]["id"] == api_client.tenant.id

    def test_docs_require_auth(self, api_client):
        assert api_client.client.get("/docs").status_code == 401
        assert api_client.client.get("/docs", headers=api_client.headers).status_code == 200


# ---------------------------------------------------------------------------
# Scope guards
# ---------------------------------------------------------------------------


def _ctx(*scopes: str) -> AuthContext:
    return AuthContext(tenant_id="t", scopes=list(scopes), user_id="u")


class TestScopeGuards:
    def test_require_scope(self):
        guard = require_scope("jobs:read")
        assert guard(_ctx("jobs:*")).user_id == "u"
        with pytest.raises(HTTPException) as exc_info:
            guard(_ctx("users:read"))
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail["detail"] == {"required_scope": "jobs:read"}

    def test_require_any_and_all(self):
        assert require_any_scope("jobs:read", "users:read")(_ctx("users:read"))
        with pytest.raises(HTTPException):
            require_all_scopes("jobs:read", "users:read")(_ctx("users:read"))
        assert require_all_scopes("jobs:read", "users:read")(_ctx("jobs:read", "users:read"))

    def test_require_admin(self):
        assert require_admin()(_ctx("admin:*"))
        with pytest.raises(HTTPException) as exc_info:
            require_admin()(_ctx("users:*"))
        assert exc_info.value.detail["detail"] == {"required_scopes": ["*", "admin:*"]}

    def test_require_admin_or_scope(self):
        guard = require_admin_or_scope("api_keys:write")
        assert guard(_ctx("*"))
        assert guard(_ctx("api_keys:write"))
        with pytest.raises(HTTPException) as exc_info:
            guard(_ctx("api_keys:read"))
        assert exc_info.value.detail["code"] == "forbidden"

    def test_forbidden_envelope_over_http(self, api_client, auth_headers):
        users = api_client.engine.users
        viewer = users.create_user(api_client.tenant.id, "viewer-guard@acme.test", "", template="viewer")
        resp = api_client.client.get("/api/v1/api-keys", headers=auth_headers(viewer))
        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "forbidden"
        assert error["detail"] == {"required_scopes": ["*", "admin:*", "api_keys:read"]}

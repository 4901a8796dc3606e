"""
iam/dependencies.py -- FastAPI Depends() helpers for authentication and scopes.

One authenticator, two credential paths. Exactly one path runs per request:

  API key path (checked first). A key is taken from, in order:
    1. Authorization: Bearer <key>  or  Authorization: X-API-Key <key>
    2. X-API-Key header
    3. api_key query parameter
  and only when the value has the API key shape. A Bearer value that is not
  key-shaped is left for the token path.

  Token path. An access JWT from Authorization: Bearer <jwt>, falling back to
  the access_token cookie.

Both paths converge on an AuthContext (iam.models.AuthContext).

try_get_auth_context() is the soft variant (returns None on failure).
get_auth_context() raises HTTP 401 when unauthenticated.
require_scope() / require_any_scope() / require_all_scopes() /
require_admin() / require_admin_or_scope() are dependency factories that
raise HTTP 403 with the missing scope(s) in the error detail.

Layer rule: this module may import from fastapi because it is part of the
FastAPI dependency injection system. It does not import from api/.
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request

from core.config import get_settings
from iam.credentials import validate_api_key_format
from iam.errors import AuthorizationError
from iam.models import AuthContext, ClientInfo
from iam.scopes import has_all_scopes, has_any_scope, has_scope, is_admin
from iam.tokens import decode_access_token

logger = logging.getLogger("tenantgate.iam.auth")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Credential extraction
# ---------------------------------------------------------------------------


def _is_api_key(value: str) -> bool:
    return validate_api_key_format(value, _settings.api_key_prefixes, _settings.api_key_bytes)


def extract_api_key(request: Request) -> str | None:
    """Return a key-shaped credential from the request, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, value = auth_header.partition(" ")
    value = value.strip()
    if scheme.lower() in ("bearer", "x-api-key") and value and _is_api_key(value):
        return value

    header_key = request.headers.get("X-API-Key", "").strip()
    if header_key and _is_api_key(header_key):
        return header_key

    query_key = request.query_params.get("api_key", "").strip()
    if query_key and _is_api_key(query_key):
        return query_key
    return None


def _extract_bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() == "bearer" and token:
        return token
    return request.cookies.get(_settings.access_cookie_name) or None


def get_client_info(request: Request) -> ClientInfo:
    """Caller metadata recorded on the login session."""
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def _authenticate(request: Request) -> AuthContext | None:
    """Run the single applicable credential path.

    Returns None when no credential was presented or the token is invalid.
    Raises AuthorizationError for a key-shaped credential that fails
    validation (unknown, revoked, expired).
    """
    raw_key = extract_api_key(request)
    if raw_key is not None:
        api_key = request.app.state.api_keys.validate_api_key(raw_key)
        return AuthContext(
            tenant_id=api_key.tenant_id,
            scopes=list(api_key.scopes),
            user_id=api_key.user_id,
            is_api_key=True,
            api_key_id=api_key.id,
        )

    token = _extract_bearer_token(request)
    if token is None:
        return None
    claims = decode_access_token(token)
    if claims is None:
        return None
    return AuthContext(
        tenant_id=claims.tenant_id,
        scopes=list(claims.scopes),
        user_id=claims.user_id,
        email=claims.email,
        name=claims.name,
    )


def try_get_auth_context(request: Request) -> AuthContext | None:
    """Authenticate the request. Never raises; None means unauthenticated."""
    try:
        return _authenticate(request)
    except AuthorizationError:
        return None


def get_auth_context(request: Request) -> AuthContext:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: AuthContext = Depends(get_auth_context)): ...
    """
    try:
        ctx = _authenticate(request)
    except AuthorizationError as exc:
        logger.warning("API key rejected: %s", exc.code, extra={"event": "api_key_rejected"})
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": exc.message},
        ) from exc
    if ctx is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required"},
        )
    request.state.auth = ctx
    return ctx


# ---------------------------------------------------------------------------
# Scope guards
# ---------------------------------------------------------------------------


def _forbidden(detail: dict) -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={"code": "forbidden", "message": "Insufficient permissions", "detail": detail},
    )


def require_scope(scope: str):
    """Dependency factory: the caller must hold `scope`."""

    def dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not has_scope(ctx.scopes, scope):
            raise _forbidden({"required_scope": scope})
        return ctx

    return dependency


def require_any_scope(*scopes: str):
    def dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not has_any_scope(ctx.scopes, *scopes):
            raise _forbidden({"required_scopes": list(scopes)})
        return ctx

    return dependency


def require_all_scopes(*scopes: str):
    def dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not has_all_scopes(ctx.scopes, *scopes):
            raise _forbidden({"required_scopes": list(scopes)})
        return ctx

    return dependency


def require_admin():
    """Dependency factory: the caller must hold "*" or "admin:*"."""

    def dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not is_admin(ctx.scopes):
            raise _forbidden({"required_scopes": ["*", "admin:*"]})
        return ctx

    return dependency


def require_admin_or_scope(scope: str):
    def dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not (is_admin(ctx.scopes) or has_scope(ctx.scopes, scope)):
            raise _forbidden({"required_scopes": ["*", "admin:*", scope]})
        return ctx

    return dependency

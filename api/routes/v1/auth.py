"""
api/routes/v1/auth.py -- OAuth login, token refresh and session endpoints.

Routes:
  POST /api/v1/auth/login                -- start OAuth login; returns provider URL + state
  GET  /api/v1/auth/callback/{provider}  -- provider redirect target; issues tokens
  POST /api/v1/auth/refresh              -- new access token from a refresh token
  POST /api/v1/auth/logout               -- revoke refresh tokens + sessions; clear cookies
  GET  /api/v1/auth/me                   -- current principal (requires auth)
  GET  /api/v1/auth/providers            -- list enabled OAuth providers (public)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [M5] Cache-Control: no-store on every response that carries a token.
  The callback state is one-time and bound to the provider in the path.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.limiter import limiter
from api.models import (
    AccessTokenResponse,
    MeResponse,
    MessageResponse,
    OAuthLoginRequest,
    OAuthLoginResponse,
    OAuthProviderInfo,
    RefreshRequest,
    TenantResponse,
    TokenResponse,
    UserResponse,
)
from core.config import get_settings
from iam.dependencies import get_auth_context, get_client_info, try_get_auth_context
from iam.errors import AuthorizationError
from iam.models import AuthContext, ClientInfo
from iam.oauth import OAuthFlow
from iam.sessions import SessionManager
from iam.tokens import clear_auth_cookies, set_auth_cookies

_settings = get_settings()

# Auth policy:
# - POST /auth/login, GET /auth/callback/{provider}:  public -- these ARE the login
# - POST /auth/refresh:                               public -- the refresh token is the credential
# - POST /auth/logout:                                access token, or the refresh token when that has expired
# - GET  /auth/providers:                             public -- login page renders provider buttons
# - GET  /auth/me:                                    requires auth (get_auth_context)
router = APIRouter()


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=OAuthLoginResponse)
def login(request: Request, body: OAuthLoginRequest) -> OAuthLoginResponse:
    """Begin an OAuth login. The client redirects the browser to auth_url."""
    flow: OAuthFlow = request.app.state.oauth_flow
    auth_url, state = flow.initiate_login(body.provider, body.invitation_token)
    return OAuthLoginResponse(auth_url=auth_url, state=state)


@router.get("/auth/callback/{provider}", response_model=TokenResponse)
def oauth_callback(
    request: Request,
    response: Response,
    provider: str,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    client: ClientInfo = Depends(get_client_info),
) -> TokenResponse:
    """Complete an OAuth login: validate state, resolve the user, issue tokens."""
    flow: OAuthFlow = request.app.state.oauth_flow
    bundle = flow.handle_callback(provider, code, state, error=error, client=client)
    set_auth_cookies(response, bundle.access_token, bundle.refresh_token)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenResponse.from_bundle(bundle)


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=AccessTokenResponse)
def refresh(request: Request, response: Response, body: RefreshRequest | None = None) -> AccessTokenResponse:
    """Exchange a refresh token (body or cookie) for a new access token."""
    token = (body.refresh_token if body else None) or request.cookies.get(_settings.refresh_cookie_name)
    if not token:
        raise AuthorizationError("Refresh token required.", "invalid_refresh_token")
    sessions: SessionManager = request.app.state.sessions
    access_token, _user = sessions.refresh(token)
    set_auth_cookies(response, access_token)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AccessTokenResponse(access_token=access_token, expires_in=_settings.access_token_expire_seconds)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    body: RefreshRequest | None = None,
    ctx: AuthContext | None = Depends(try_get_auth_context),
) -> MessageResponse:
    """Revoke the caller's refresh tokens and sessions, then clear cookies.

    The caller is the access token's user or, once that token has expired,
    the owner of the refresh token in the body or cookie.
    """
    sessions: SessionManager = request.app.state.sessions
    user_id = ctx.user_id if ctx is not None and not ctx.is_api_key else None
    if user_id is None:
        token = (body.refresh_token if body else None) or request.cookies.get(_settings.refresh_cookie_name)
        user_id = sessions.refresh_token_owner(token) if token else None
    if user_id is None:
        raise AuthorizationError("Authentication required.", "unauthorized")
    sessions.logout(user_id)
    clear_auth_cookies(response)
    return MessageResponse(message="Logged out.")


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none are set up."""
    flow: OAuthFlow = request.app.state.oauth_flow
    return [OAuthProviderInfo(name=p.value.lower(), display_name=p.display_name) for p in flow.enabled_providers()]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> MeResponse:
    """Return the user and tenant behind the current credential."""
    if ctx.user_id is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_user", "message": "This API key is not bound to a user."},
        )
    user = request.app.state.users.get_user(ctx.user_id, ctx.tenant_id)
    tenant = request.app.state.tenants.get_tenant(ctx.tenant_id)
    return MeResponse(user=UserResponse.from_domain(user), tenant=TenantResponse.from_domain(tenant))

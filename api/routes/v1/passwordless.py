"""
api/routes/v1/passwordless.py -- Email one-time-code signup and login.

Routes:
  POST /api/v1/auth/passwordless/tenants          -- tenants an email belongs to
  POST /api/v1/auth/passwordless/signup/initiate  -- invitation-gated signup; sends code
  POST /api/v1/auth/passwordless/signup/verify    -- verify signup code; activates user
  POST /api/v1/auth/passwordless/login/initiate   -- send a login code
  POST /api/v1/auth/passwordless/login/verify     -- verify login code; issues tokens
  POST /api/v1/auth/passwordless/resend-otp       -- resend a signup or login code

All routes are public and rate-limited per IP (OTP_RATE_LIMIT). Unknown
emails get the same response shape as registered ones.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    LoginInitiateRequest,
    OTPVerifyRequest,
    PasswordlessResponse,
    ResendOTPRequest,
    SignupInitiateRequest,
    SignupVerifyResponse,
    TenantLookupItem,
    TenantLookupRequest,
    TenantLookupResponse,
    TokenResponse,
    UserResponse,
)
from core.config import get_settings
from iam.dependencies import get_client_info
from iam.models import ClientInfo
from iam.passwordless import PasswordlessFlow
from iam.tokens import set_auth_cookies

_settings = get_settings()

router = APIRouter(prefix="/auth/passwordless")


def _flow(request: Request) -> PasswordlessFlow:
    return request.app.state.passwordless


@limiter.limit(_settings.otp_rate_limit)
@router.post("/tenants", response_model=TenantLookupResponse)
def lookup_tenants(request: Request, body: TenantLookupRequest) -> TenantLookupResponse:
    """List the active tenants in which this email has an account."""
    memberships = _flow(request).get_user_tenants(body.email)
    return TenantLookupResponse(
        tenants=[
            TenantLookupItem(
                tenant_id=m.tenant.id,
                company_name=m.tenant.company_name,
                auth_methods=m.auth_methods,
            )
            for m in memberships
        ]
    )


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)
@router.post("/signup/initiate", response_model=PasswordlessResponse)
def signup_initiate(request: Request, body: SignupInitiateRequest) -> PasswordlessResponse:
    result = _flow(request).initiate_signup(body.email, body.name, body.invitation_token)
    return PasswordlessResponse.from_result(result)


@limiter.limit(_settings.otp_rate_limit)
@router.post("/signup/verify", response_model=SignupVerifyResponse)
def signup_verify(request: Request, body: OTPVerifyRequest) -> SignupVerifyResponse:
    user = _flow(request).verify_signup(body.email, body.code, body.tenant_id)
    return SignupVerifyResponse(
        message="Email verified. You can now log in.",
        user=UserResponse.from_domain(user),
    )


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)
@router.post("/login/initiate", response_model=PasswordlessResponse)
def login_initiate(request: Request, body: LoginInitiateRequest) -> PasswordlessResponse:
    result = _flow(request).initiate_login(body.email, body.tenant_id)
    return PasswordlessResponse.from_result(result)


@limiter.limit(_settings.otp_rate_limit)
@router.post("/login/verify", response_model=TokenResponse)
def login_verify(
    request: Request,
    response: Response,
    body: OTPVerifyRequest,
    client: ClientInfo = Depends(get_client_info),
) -> TokenResponse:
    """Verify a login code and issue the token pair (body and cookies)."""
    bundle = _flow(request).verify_login(body.email, body.code, body.tenant_id, client)
    set_auth_cookies(response, bundle.access_token, bundle.refresh_token)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenResponse.from_bundle(bundle)


@limiter.limit(_settings.otp_rate_limit)
@router.post("/resend-otp", response_model=PasswordlessResponse)
def resend_otp(request: Request, body: ResendOTPRequest) -> PasswordlessResponse:
    result = _flow(request).resend_otp(body.email, body.tenant_id, body.purpose)
    return PasswordlessResponse.from_result(result)

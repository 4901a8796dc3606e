"""
API request and response models for TenantGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in iam/models.py, which
own the internal domain representation. The from_domain() constructors map
between the two.

Separation of concerns: iam/ models = domain truth; api/ models = API contract.
Secrets (API key plaintext, invitation tokens) appear only in the "created"
responses that must hand them over once.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from iam.apikeys import CreatedApiKey
from iam.invitations import TokenValidation
from iam.models import ApiKey, Invitation, SubscriptionPlan, Tenant, TokenBundle, User
from iam.passwordless import PasswordlessResult

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
OTP_PATTERN = r"^\d{4,10}$"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Inner error object. `detail` carries structured context (ids, counts)."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Tenants and users
# ---------------------------------------------------------------------------


class TenantResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    company_name: str
    status: str
    subscription_plan: str
    max_users: int
    current_users: int
    trial_expires_at: Optional[datetime] = None
    subscription_expires_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, tenant: Tenant) -> "TenantResponse":
        return cls(
            id=tenant.id,
            company_name=tenant.company_name,
            status=tenant.status.value,
            subscription_plan=tenant.subscription_plan.value,
            max_users=tenant.max_users,
            current_users=tenant.current_users,
            trial_expires_at=tenant.trial_expires_at,
            subscription_expires_at=tenant.subscription_expires_at,
        )


class TenantCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    company_name: str = Field(min_length=1, max_length=255)
    subscription_plan: SubscriptionPlan = SubscriptionPlan.TRIAL


class TenantPlanUpdate(BaseModel):
    subscription_plan: SubscriptionPlan


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    email: str
    name: str
    picture: Optional[str] = None
    status: str
    scopes: list[str]
    oauth_provider: Optional[str] = None
    otp_enabled: bool
    email_verified: bool
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            tenant_id=user.tenant_id,
            email=user.email,
            name=user.name,
            picture=user.picture,
            status=user.status.value,
            scopes=list(user.scopes),
            oauth_provider=user.oauth_provider.value if user.oauth_provider else None,
            otp_enabled=user.otp_enabled,
            email_verified=user.email_verified,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users. Scopes default to the "viewer" group."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    name: str = Field(default="", max_length=255)
    scopes: Optional[list[str]] = Field(default=None, max_length=100)
    template: Optional[str] = Field(default=None, max_length=50)


class UserScopesUpdate(BaseModel):
    scopes: list[str] = Field(min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# OAuth and sessions
# ---------------------------------------------------------------------------


class OAuthLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. Provider is case-insensitive."""

    model_config = ConfigDict(str_strip_whitespace=True)

    provider: str = Field(min_length=1, max_length=20)
    invitation_token: Optional[str] = Field(default=None, max_length=256)


class OAuthLoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    auth_url: str
    state: str


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str


class TokenResponse(BaseModel):
    """Successful login: token pair plus the principal."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserResponse
    tenant: TenantResponse

    @classmethod
    def from_bundle(cls, bundle: TokenBundle) -> "TokenResponse":
        return cls(
            access_token=bundle.access_token,
            refresh_token=bundle.refresh_token,
            expires_in=bundle.expires_in,
            user=UserResponse.from_domain(bundle.user),
            tenant=TenantResponse.from_domain(bundle.tenant),
        )


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class AccessTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    tenant: TenantResponse


# ---------------------------------------------------------------------------
# Passwordless
# ---------------------------------------------------------------------------


class TenantLookupRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)


class TenantLookupItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    company_name: str
    auth_methods: dict[str, Any]


class TenantLookupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenants: list[TenantLookupItem]


class SignupInitiateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    name: str = Field(default="", max_length=255)
    invitation_token: str = Field(min_length=1, max_length=256)


class OTPVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    code: str = Field(pattern=OTP_PATTERN)
    tenant_id: str = Field(min_length=1, max_length=64)


class LoginInitiateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    tenant_id: str = Field(min_length=1, max_length=64)


class ResendOTPRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    tenant_id: str = Field(min_length=1, max_length=64)
    purpose: Literal["signup", "login"]


class PasswordlessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    expires_in_seconds: Optional[int] = None
    account_linked: bool = False
    auth_methods: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: PasswordlessResult) -> "PasswordlessResponse":
        return cls(
            message=result.message,
            expires_in_seconds=result.expires_in_seconds,
            account_linked=result.account_linked,
            auth_methods=dict(result.auth_methods),
        )


class SignupVerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    scopes: list[str] = Field(min_length=1, max_length=100)
    environment: Literal["live", "test"] = "live"
    expires_at: Optional[datetime] = None


class ApiKeyUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    scopes: Optional[list[str]] = Field(default=None, min_length=1, max_length=100)
    is_active: Optional[bool] = None


class ApiKeyResponse(BaseModel):
    """API key metadata. The key itself is never included."""

    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    user_id: Optional[str] = None
    name: str
    description: str
    key_prefix: str
    scopes: list[str]
    is_active: bool
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, api_key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=api_key.id,
            tenant_id=api_key.tenant_id,
            user_id=api_key.user_id,
            name=api_key.name,
            description=api_key.description,
            key_prefix=api_key.key_prefix,
            scopes=list(api_key.scopes),
            is_active=api_key.is_active,
            expires_at=api_key.expires_at,
            last_used_at=api_key.last_used_at,
            created_at=api_key.created_at,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Creation response: the only time the full key is returned."""

    key: str

    @classmethod
    def from_created(cls, created: CreatedApiKey) -> "ApiKeyCreatedResponse":
        return cls(**ApiKeyResponse.from_domain(created.api_key).model_dump(), key=created.key)


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


class InvitationCreate(BaseModel):
    """Request body for POST /api/v1/invitations.

    Scopes resolve as: explicit list, else named template, else "viewer".
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    scopes: Optional[list[str]] = Field(default=None, max_length=100)
    template: Optional[str] = Field(default=None, max_length=50)


class InvitationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    email: str
    scopes: list[str]
    status: str
    invited_by: str
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, invitation: Invitation) -> "InvitationResponse":
        return cls(
            id=invitation.id,
            tenant_id=invitation.tenant_id,
            email=invitation.email,
            scopes=list(invitation.scopes),
            status=invitation.status.value,
            invited_by=invitation.invited_by,
            expires_at=invitation.expires_at,
            accepted_at=invitation.accepted_at,
            accepted_by=invitation.accepted_by,
            created_at=invitation.created_at,
        )


class InvitationCreatedResponse(InvitationResponse):
    token: str

    @classmethod
    def from_invitation(cls, invitation: Invitation) -> "InvitationCreatedResponse":
        return cls(**InvitationResponse.from_domain(invitation).model_dump(), token=invitation.token)


class InvitationValidateRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)


class InvitationValidationResponse(BaseModel):
    """Success-shaped validity answer. Exposes only what the invitee needs."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    message: str
    email: Optional[str] = None
    tenant_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_validation(cls, result: TokenValidation) -> "InvitationValidationResponse":
        inv = result.invitation if result.valid else None
        return cls(
            valid=result.valid,
            message=result.message,
            email=inv.email if inv else None,
            tenant_id=inv.tenant_id if inv else None,
            expires_at=inv.expires_at if inv else None,
        )


# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------


class ScopeInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    scope: str
    category: str
    description: str


class ScopeGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    scopes: list[str]

"""
iam/models.py -- Domain dataclasses and enums for identity entities.

Pattern: Data class (pure data container, zero logic). Entity rules live in
the owning module (iam/tenants.py, iam/users.py, iam/invitations.py, ...)
as functions that take an entity and return a new one via
dataclasses.replace(); stores and routes do the I/O.

Timestamps are timezone-aware UTC datetimes. The store converts to and from
ISO 8601 text at the persistence boundary.

Layer rule: no imports from the rest of the project.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


# ---------------------------------------------------------------------------
# Enums -- str-valued so they serialize as their names in JSON and SQL
# ---------------------------------------------------------------------------


class TenantStatus(str, Enum):
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CANCELED = "CANCELED"


class SubscriptionPlan(str, Enum):
    TRIAL = "TRIAL"
    BASIC = "BASIC"
    PROFESSIONAL = "PROFESSIONAL"
    ENTERPRISE = "ENTERPRISE"


class UserStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class OAuthProvider(str, Enum):
    GOOGLE = "GOOGLE"
    MICROSOFT = "MICROSOFT"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class OTPPurpose(str, Enum):
    VERIFICATION = "VERIFICATION"
    JOB_APPLICATION = "JOB_APPLICATION"


# ---------------------------------------------------------------------------
# Persistent entities
# ---------------------------------------------------------------------------


@dataclass
class Tenant:
    """An isolated customer organization.

    current_users never exceeds max_users; the store enforces this with a
    conditional UPDATE so concurrent signups cannot overshoot the ceiling.
    """

    id: str
    company_name: str
    status: TenantStatus
    subscription_plan: SubscriptionPlan
    max_users: int
    current_users: int = 0
    trial_expires_at: datetime | None = None
    subscription_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class User:
    """A tenant-scoped identity.

    The same email may exist in several tenants as independent users.
    oauth_provider / oauth_provider_id are None until an OAuth login links
    them; otp_enabled is set when the account can log in by one-time code.
    Both may be present at once.
    """

    id: str
    tenant_id: str
    email: str
    name: str
    status: UserStatus
    scopes: list[str] = field(default_factory=list)
    picture: str | None = None
    oauth_provider: OAuthProvider | None = None
    oauth_provider_id: str | None = None
    otp_enabled: bool = False
    email_verified: bool = False
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Invitation:
    """A tenant-scoped, time-limited right to create or link an account."""

    id: str
    tenant_id: str
    email: str
    token: str
    scopes: list[str]
    status: InvitationStatus
    invited_by: str
    expires_at: datetime
    accepted_at: datetime | None = None
    accepted_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ApiKey:
    """A long-lived credential for non-browser clients.

    key_hash is SHA-256 of the full key. key_prefix ("{prefix}_{8 hex}...")
    is stored for display only. The plaintext is returned once at creation
    and never persisted.
    """

    id: str
    tenant_id: str
    name: str
    key_hash: str
    key_prefix: str
    scopes: list[str]
    user_id: str | None = None
    description: str = ""
    is_active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class OTP:
    """A one-time numeric code bound to a contact and purpose.

    code_hash is a bcrypt hash; the plaintext code only exists in memory
    during issuance and in the notification sent to the contact.
    """

    id: str
    contact: str
    code_hash: str
    purpose: OTPPurpose
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 5
    verified_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class RefreshToken:
    id: str
    token_hash: str
    user_id: str
    tenant_id: str
    expires_at: datetime
    is_revoked: bool = False
    created_at: datetime | None = None


@dataclass
class UserSession:
    id: str
    user_id: str
    tenant_id: str
    session_token: str
    expires_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    last_activity: datetime | None = None
    is_revoked: bool = False
    created_at: datetime | None = None


@dataclass
class PasswordResetToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    is_used: bool = False
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Transient values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenClaims:
    """The verified application claims of an access token."""

    user_id: str
    tenant_id: str
    email: str
    name: str
    scopes: list[str]
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class AuthContext:
    """The authenticated principal of a request.

    user_id is None for API keys not tied to a user. email and name are empty
    on the API key path.
    """

    tenant_id: str
    scopes: list[str]
    user_id: str | None = None
    email: str = ""
    name: str = ""
    is_api_key: bool = False
    api_key_id: str | None = None


@dataclass(frozen=True)
class OAuthUserInfo:
    """Identity returned by a provider, normalized across providers."""

    provider_subject_id: str
    email: str
    name: str
    picture: str | None = None
    email_verified: bool = False


@dataclass(frozen=True)
class ClientInfo:
    """Request metadata recorded on a login session."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class TokenBundle:
    """Result of a successful login: tokens plus the principal they describe."""

    access_token: str
    refresh_token: str
    expires_in: int
    user: User
    tenant: Tenant

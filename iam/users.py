"""
iam/users.py -- User rules and the user service.

Rules are pure: each takes a User and returns a new User built with
dataclasses.replace(). Nothing here mutates a value another caller holds.

Status transitions:
  PENDING -> ACTIVE      activate()   (passwordless signup verification)
  ACTIVE  -> SUSPENDED   suspend()

Registration (UserService.register) pairs the user insert with the tenant's
seat counter. The seat is reserved first with a conditional UPDATE; if the
insert then fails (duplicate email in the tenant) the seat is released, so
current_users always matches the rows that exist.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from iam import scopes as scope_model
from iam.errors import BusinessRuleError, ConflictError, NotFoundError, ValidationError
from iam.models import OAuthProvider, OAuthUserInfo, User, UserStatus
from iam.store import IAMStore
from iam.tenants import TenantService

logger = logging.getLogger("tenantgate.iam.users")


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def has_oauth(user: User) -> bool:
    return user.oauth_provider is not None and bool(user.oauth_provider_id)


def has_otp(user: User) -> bool:
    return user.otp_enabled


def is_active(user: User) -> bool:
    return user.status == UserStatus.ACTIVE


def can_login(user: User) -> bool:
    return is_active(user) and user.email_verified


def is_admin(user: User) -> bool:
    return scope_model.is_admin(user.scopes)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _touch(user: User, **changes) -> User:
    return replace(user, updated_at=datetime.now(timezone.utc), **changes)


def activate(user: User) -> User:
    if user.status != UserStatus.PENDING:
        raise BusinessRuleError(
            f"Cannot activate a user in status {user.status.value}.",
            "invalid_status",
            details={"status": user.status.value},
        )
    return _touch(user, status=UserStatus.ACTIVE)


def suspend(user: User) -> User:
    if user.status != UserStatus.ACTIVE:
        raise BusinessRuleError(
            f"Cannot suspend a user in status {user.status.value}.",
            "invalid_status",
            details={"status": user.status.value},
        )
    return _touch(user, status=UserStatus.SUSPENDED)


def link_oauth(user: User, provider: OAuthProvider, subject_id: str) -> User:
    return _touch(user, oauth_provider=provider, oauth_provider_id=subject_id)


def update_profile(user: User, name: str | None = None, picture: str | None = None) -> User:
    """Blank values never overwrite what is already stored."""
    return _touch(user, name=name or user.name, picture=picture or user.picture)


def enable_otp(user: User) -> User:
    return _touch(user, otp_enabled=True)


def mark_email_verified(user: User) -> User:
    return _touch(user, email_verified=True)


def new_user(
    tenant_id: str,
    email: str,
    name: str,
    scopes: list[str],
    status: UserStatus,
    *,
    otp_enabled: bool = False,
    email_verified: bool = False,
    oauth: tuple[OAuthProvider, OAuthUserInfo] | None = None,
) -> User:
    now = datetime.now(timezone.utc)
    user = User(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        email=email,
        name=name,
        status=status,
        scopes=list(scopes),
        otp_enabled=otp_enabled,
        email_verified=email_verified,
        created_at=now,
        updated_at=now,
    )
    if oauth is not None:
        provider, info = oauth
        user = replace(user, oauth_provider=provider, oauth_provider_id=info.provider_subject_id, picture=info.picture)
    return user


# ---------------------------------------------------------------------------
# Scope assignment
# ---------------------------------------------------------------------------


def resolve_scopes(scopes: list[str] | None = None, template: str | None = None) -> list[str]:
    """Pick the scopes for a new grant.

    Priority: explicit scopes, then a named group template, then the default
    "viewer" group. Explicit scopes must all be registered and non-empty.
    """
    if scopes:
        invalid = [s for s in scopes if not scope_model.validate_scope(s)]
        if invalid:
            raise ValidationError(
                "One or more scopes are invalid.",
                "invalid_scopes",
                details={"invalid_scopes": invalid},
            )
        return list(dict.fromkeys(scopes))
    if scopes is not None and template is None:
        raise ValidationError("At least one scope is required.", "invalid_scopes")
    if template:
        if not scope_model.is_known_group(template):
            raise ValidationError(
                f"Unknown scope template '{template}'.",
                "invalid_scope_template",
                details={"available_templates": scope_model.get_available_groups()},
            )
        return scope_model.get_scopes_by_group(template)
    return scope_model.get_scopes_by_group(scope_model.DEFAULT_GROUP)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class UserService:
    def __init__(self, store: IAMStore, tenants: TenantService) -> None:
        self.store = store
        self.tenants = tenants

    def register(self, user: User) -> User:
        """Insert a user and take a seat in its tenant, atomically enough.

        Raises BusinessRuleError when the tenant is full and ConflictError when
        the email already exists in the tenant.
        """
        self.tenants.reserve_seat(user.tenant_id)
        try:
            self.store.create_user(user)
        except IntegrityError as exc:
            self.tenants.release_seat(user.tenant_id)
            raise ConflictError("A user with this email already exists in this tenant.", "user_exists") from exc
        logger.info(
            "User registered",
            extra={"event": "user_registered", "user_id": user.id, "tenant_id": user.tenant_id},
        )
        return user

    def unregister(self, user: User) -> None:
        """Undo register() for a user whose onboarding failed afterwards."""
        self.store.delete_user(user.id)
        self.tenants.release_seat(user.tenant_id)
        logger.info("User registration rolled back", extra={"event": "user_rollback", "user_id": user.id})

    def create_user(
        self,
        tenant_id: str,
        email: str,
        name: str,
        scopes: list[str] | None = None,
        template: str | None = None,
    ) -> User:
        """Directly create an ACTIVE, OTP-enabled user (admin operation)."""
        self.tenants.require_active(tenant_id)
        email = normalize_email(email)
        if self.store.get_user_by_email(email, tenant_id) is not None:
            raise ConflictError("A user with this email already exists in this tenant.", "user_exists")
        user = new_user(
            tenant_id,
            email,
            name.strip() or email,
            resolve_scopes(scopes, template),
            UserStatus.ACTIVE,
            otp_enabled=True,
            email_verified=True,
        )
        return self.register(user)

    def get_user(self, user_id: str, tenant_id: str | None = None) -> User:
        """Fetch a user. A user in another tenant is reported as not found."""
        user = self.store.get_user(user_id)
        if user is None or (tenant_id is not None and user.tenant_id != tenant_id):
            raise NotFoundError("User not found.", "user_not_found")
        return user

    def list_users(self, tenant_id: str) -> list[User]:
        return self.store.list_users(tenant_id)

    def save(self, user: User) -> User:
        if not self.store.update_user(user):
            raise NotFoundError("User not found.", "user_not_found")
        return user

    def activate_user(self, user_id: str, tenant_id: str | None = None) -> User:
        return self.save(activate(self.get_user(user_id, tenant_id)))

    def suspend_user(self, user_id: str, tenant_id: str | None = None) -> User:
        user = self.save(suspend(self.get_user(user_id, tenant_id)))
        self.store.revoke_user_refresh_tokens(user_id)
        self.store.revoke_user_sessions(user_id)
        logger.info("User suspended", extra={"event": "user_suspended", "user_id": user_id})
        return user

    def set_scopes(self, user_id: str, scopes: list[str], tenant_id: str | None = None) -> User:
        user = self.get_user(user_id, tenant_id)
        return self.save(_touch(user, scopes=resolve_scopes(scopes)))

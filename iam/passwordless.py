"""
iam/passwordless.py -- Email one-time-code signup and login.

Signup (invitation-gated):
  initiate_signup(email, name, invitation_token)
    - invitation must exist, be acceptable and match the email
    - tenant must exist and be active
    - existing user with OTP enabled      -> conflict ("use login instead")
    - existing OAuth-only user            -> OTP linked onto that account
    - otherwise                           -> PENDING user created, seat taken
    - invitation consumed, code sent
  verify_signup(email, code, tenant_id)
    - code verified, user activated, email marked verified

Login:
  initiate_login(email, tenant_id)
    - unknown email -> the same success-shaped answer a real send produces
    - inactive, OAuth-only, unverified, or tenant-inactive accounts are
      refused explicitly
  verify_login(email, code, tenant_id, client)
    - any code failure -> 401 "Invalid or expired code"
    - session established via SessionManager

Enumeration prevention: get_user_tenants(), initiate_login() and
resend_otp() answer unknown emails with the same shape and message as known
ones.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from iam.errors import AuthorizationError, BusinessRuleError, ConflictError, ValidationError
from iam.invitations import InvitationService
from iam.models import ClientInfo, OTPPurpose, Tenant, TokenBundle, User, UserStatus
from iam.otp import OTPService
from iam.sessions import SessionManager
from iam.store import IAMStore
from iam.tenants import TenantService
from iam.tenants import is_active as tenant_is_active
from iam.users import (
    UserService,
    activate,
    can_login,
    enable_otp,
    has_oauth,
    has_otp,
    is_active,
    mark_email_verified,
    new_user,
    normalize_email,
    resolve_scopes,
)

logger = logging.getLogger("tenantgate.iam.passwordless")

_GENERIC_LOGIN_MESSAGE = "If this email is registered, you'll receive a login code."
_GENERIC_RESEND_MESSAGE = "If this email is registered, you'll receive a verification code."


def auth_methods(user: User) -> dict[str, Any]:
    return {
        "otp": has_otp(user),
        "oauth": has_oauth(user),
        "oauth_provider": user.oauth_provider.value.lower() if user.oauth_provider else None,
    }


@dataclass(frozen=True)
class PasswordlessResult:
    """Outcome of an initiate/resend step. Never carries the code."""

    message: str
    expires_in_seconds: int | None = None
    account_linked: bool = False
    user_id: str | None = None
    auth_methods: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TenantMembership:
    tenant: Tenant
    user: User

    @property
    def auth_methods(self) -> dict[str, Any]:
        return auth_methods(self.user)


class PasswordlessFlow:
    def __init__(
        self,
        store: IAMStore,
        otp: OTPService,
        tenants: TenantService,
        users: UserService,
        invitations: InvitationService,
        sessions: SessionManager,
    ) -> None:
        self.store = store
        self.otp = otp
        self.tenants = tenants
        self.users = users
        self.invitations = invitations
        self.sessions = sessions

    @property
    def _expires_in(self) -> int:
        return self.otp.settings.otp_expire_seconds

    def _send_code(self, email: str) -> None:
        self.otp.generate_otp(email, OTPPurpose.VERIFICATION)

    # ------------------------------------------------------------------
    # Tenant discovery
    # ------------------------------------------------------------------

    def get_user_tenants(self, email: str) -> list[TenantMembership]:
        """Active tenants in which `email` has an account. [] for unknown emails."""
        memberships = []
        for user in self.store.list_users_by_email(normalize_email(email)):
            tenant = self.store.get_tenant(user.tenant_id)
            if tenant is not None and tenant_is_active(tenant):
                memberships.append(TenantMembership(tenant=tenant, user=user))
        return memberships

    # ------------------------------------------------------------------
    # Signup
    # ------------------------------------------------------------------

    def initiate_signup(self, email: str, name: str, invitation_token: str) -> PasswordlessResult:
        email = normalize_email(email)
        invitation = self.invitations.require_acceptable(invitation_token, email)
        tenant = self.tenants.get_tenant(invitation.tenant_id)
        if not tenant_is_active(tenant):
            raise BusinessRuleError("Organization is not active", "tenant_inactive", status_code=403)

        existing = self.store.get_user_by_email(email, tenant.id)
        if existing is not None:
            if has_otp(existing):
                raise ConflictError(
                    "Account already exists with email/OTP login. Please use login instead.",
                    "account_exists",
                )
            linked = self.users.save(enable_otp(existing))
            self.invitations.consume(invitation, linked.id)
            self._send_code(email)
            logger.info("OTP linked to OAuth account", extra={"event": "otp_linked", "user_id": linked.id})
            return PasswordlessResult(
                message="OTP authentication linked to your existing account. Please verify your email.",
                expires_in_seconds=self._expires_in,
                account_linked=True,
                user_id=linked.id,
            )

        user = new_user(
            tenant.id,
            email,
            name.strip() or email,
            invitation.scopes or resolve_scopes(),
            UserStatus.PENDING,
            otp_enabled=True,
        )
        self.users.register(user)
        try:
            self.invitations.consume(invitation, user.id)
        except ConflictError:
            self.users.unregister(user)
            raise
        self._send_code(email)
        return PasswordlessResult(
            message="Account created! Please check your email for verification code.",
            expires_in_seconds=self._expires_in,
            user_id=user.id,
        )

    def verify_signup(self, email: str, code: str, tenant_id: str) -> User:
        email = normalize_email(email)
        self.otp.verify_otp(email, code, OTPPurpose.VERIFICATION)
        user = self.store.get_user_by_email(email, tenant_id)
        if user is None:
            raise ValidationError("Invalid or expired code", "invalid_code")
        if user.status == UserStatus.PENDING:
            user = activate(user)
        user = self.users.save(mark_email_verified(user))
        logger.info("Signup verified", extra={"event": "signup_verified", "user_id": user.id})
        return user

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def initiate_login(self, email: str, tenant_id: str) -> PasswordlessResult:
        email = normalize_email(email)
        user = self.store.get_user_by_email(email, tenant_id)
        if user is None:
            return PasswordlessResult(message=_GENERIC_LOGIN_MESSAGE, expires_in_seconds=self._expires_in)

        if not is_active(user):
            raise BusinessRuleError(
                "Account is not active. Please complete signup verification or contact support.",
                "account_inactive",
                status_code=403,
            )
        if not has_otp(user):
            provider = user.oauth_provider.display_name if user.oauth_provider else "OAuth"
            raise BusinessRuleError(
                f"This account uses {provider} login. Please sign in with {provider} instead.",
                "otp_not_enabled",
                details={"auth_methods": auth_methods(user)},
            )
        if not user.email_verified:
            raise BusinessRuleError(
                "Email not verified. Please verify your email first.",
                "email_not_verified",
                status_code=403,
            )
        tenant = self.store.get_tenant(user.tenant_id)
        if tenant is None or not tenant_is_active(tenant):
            raise BusinessRuleError("Account access is currently unavailable", "tenant_inactive", status_code=403)

        self._send_code(email)
        return PasswordlessResult(
            message="Login code sent to your email!",
            expires_in_seconds=self._expires_in,
            auth_methods=auth_methods(user),
        )

    def verify_login(self, email: str, code: str, tenant_id: str, client: ClientInfo | None = None) -> TokenBundle:
        email = normalize_email(email)
        try:
            self.otp.verify_otp(email, code, OTPPurpose.VERIFICATION)
        except (ValidationError, BusinessRuleError) as exc:
            logger.warning("Login code rejected", extra={"event": "login_failed", "reason": exc.code})
            raise AuthorizationError("Invalid or expired code", "invalid_code", details=exc.details) from exc

        user = self.store.get_user_by_email(email, tenant_id)
        if user is None:
            raise AuthorizationError("Invalid or expired code", "invalid_code")
        if not can_login(user):
            raise AuthorizationError("Account is not active.", "account_inactive", status_code=403)
        tenant = self.store.get_tenant(user.tenant_id)
        if tenant is None or not tenant_is_active(tenant):
            raise BusinessRuleError("Account access is currently unavailable", "tenant_inactive", status_code=403)
        return self.sessions.establish(user, tenant, client)

    # ------------------------------------------------------------------
    # Resend
    # ------------------------------------------------------------------

    def resend_otp(self, email: str, tenant_id: str, purpose: str) -> PasswordlessResult:
        if purpose not in ("signup", "login"):
            raise ValidationError("Purpose must be 'signup' or 'login'.", "invalid_purpose")
        email = normalize_email(email)
        user = self.store.get_user_by_email(email, tenant_id)
        if user is None:
            return PasswordlessResult(message=_GENERIC_RESEND_MESSAGE, expires_in_seconds=self._expires_in)

        tenant = self.store.get_tenant(user.tenant_id)
        if tenant is None or not tenant_is_active(tenant):
            raise BusinessRuleError("Account access is currently unavailable", "tenant_inactive", status_code=403)
        if not has_otp(user):
            raise BusinessRuleError("This account does not use email codes.", "otp_not_enabled")
        if purpose == "signup" and user.email_verified and is_active(user):
            raise BusinessRuleError("Email already verified. Please log in.", "already_verified")
        if purpose == "login" and not can_login(user):
            raise BusinessRuleError(
                "Account is not active. Please complete signup verification or contact support.",
                "account_inactive",
                status_code=403,
            )

        self._send_code(email)
        return PasswordlessResult(message="Verification code sent", expires_in_seconds=self._expires_in)

"""
iam/oauth.py -- OAuth login and registration orchestration.

Flow:
  initiate_login(provider, invitation_token)
      -> store {"provider", "invitation_token"} under a fresh state token
      -> return (provider auth URL, state)
  handle_callback(provider, code, state, error)
      -> consume state (one-time) -> exchange code -> fetch user info
      -> find_or_create_user() -> SessionManager.establish()

Registration is invitation-gated. The state payload must carry an
invitation token whose invitation is PENDING, unexpired, and addressed to
the email the provider returned.

Account linking: if a user already exists for (email, tenant) the provider
identity is linked onto that record and its profile refreshed; no second
account is created. Either way the invitation is consumed exactly once.

Security notes:
  [H1] The provider must confirm the email is verified. An unverified
       address could belong to someone who typed in a victim's email.
  The stored provider must match the callback path's provider, so a state
  token minted for one provider cannot complete another provider's flow.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from iam.errors import AuthorizationError, BusinessRuleError, ConflictError, ValidationError
from iam.invitations import InvitationService
from iam.models import ClientInfo, OAuthProvider, OAuthUserInfo, Tenant, TokenBundle, User, UserStatus
from iam.providers import IdentityProvider
from iam.sessions import SessionManager
from iam.state import StateStore
from iam.store import IAMStore
from iam.tenants import TenantService
from iam.tenants import is_active as tenant_is_active
from iam.users import (
    UserService,
    can_login,
    link_oauth,
    mark_email_verified,
    new_user,
    resolve_scopes,
    update_profile,
)

logger = logging.getLogger("tenantgate.iam.oauth")


def parse_provider(value: str | OAuthProvider) -> OAuthProvider:
    """Accept "google", "GOOGLE" or OAuthProvider.GOOGLE."""
    if isinstance(value, OAuthProvider):
        return value
    try:
        return OAuthProvider(value.strip().upper())
    except ValueError as exc:
        raise ValidationError(f"Unsupported OAuth provider '{value}'.", "unsupported_provider") from exc


class OAuthFlow:
    def __init__(
        self,
        store: IAMStore,
        state_store: StateStore,
        providers: dict[OAuthProvider, IdentityProvider],
        tenants: TenantService,
        users: UserService,
        invitations: InvitationService,
        sessions: SessionManager,
    ) -> None:
        self.store = store
        self.state_store = state_store
        self.providers = providers
        self.tenants = tenants
        self.users = users
        self.invitations = invitations
        self.sessions = sessions

    def _provider(self, provider: OAuthProvider) -> IdentityProvider:
        client = self.providers.get(provider)
        if client is None:
            raise ValidationError(f"OAuth provider {provider.value} is not configured.", "unsupported_provider")
        return client

    def enabled_providers(self) -> list[OAuthProvider]:
        return list(self.providers)

    # ------------------------------------------------------------------
    # Step 1 -- redirect
    # ------------------------------------------------------------------

    def initiate_login(self, provider: str | OAuthProvider, invitation_token: str | None = None) -> tuple[str, str]:
        provider = parse_provider(provider)
        client = self._provider(provider)
        state = self.state_store.generate_state()
        self.state_store.store_state(
            state,
            {"provider": provider.value, "invitation_token": invitation_token or ""},
        )
        return client.get_auth_url(state), state

    # ------------------------------------------------------------------
    # Step 2 -- callback
    # ------------------------------------------------------------------

    def handle_callback(
        self,
        provider: str | OAuthProvider,
        code: str | None,
        state: str | None,
        error: str | None = None,
        client: ClientInfo | None = None,
    ) -> TokenBundle:
        provider = parse_provider(provider)
        if error:
            logger.warning("Provider returned error on callback: %s", error, extra={"event": "oauth_error"})
            raise AuthorizationError("OAuth authorization failed.", "oauth_callback_error", details={"error": error})
        if not code or not state:
            raise ValidationError("Missing code or state parameter.", "missing_parameters")

        state_data = self.state_store.get_state_data(state)
        if state_data.get("provider") != provider.value:
            raise ValidationError("Invalid or expired state parameter.", "invalid_state")

        identity_provider = self._provider(provider)
        access_token = identity_provider.exchange_token(code)
        info = identity_provider.get_user_info(access_token)

        user, tenant = self.find_or_create_user(info, provider, state_data)
        if not can_login(user):
            raise AuthorizationError("User is not allowed to log in.", "user_inactive", status_code=403)
        if not tenant_is_active(tenant):
            raise BusinessRuleError("Account access is currently unavailable", "tenant_inactive", status_code=403)
        return self.sessions.establish(user, tenant, client)

    def find_or_create_user(
        self, info: OAuthUserInfo, provider: OAuthProvider, state_data: dict
    ) -> tuple[User, Tenant]:
        """Resolve the provider identity to a tenant user, linking or creating it."""
        if not info.email or not info.provider_subject_id:
            raise ValidationError("Provider returned an incomplete identity.", "incomplete_identity")
        if not info.email_verified:  # [H1]
            raise AuthorizationError(
                "Email address is not verified by the provider.", "email_not_verified", status_code=403
            )

        invitation_token = state_data.get("invitation_token")
        if not invitation_token:
            raise AuthorizationError("Invitation required for registration.", "invitation_required", status_code=403)
        invitation = self.invitations.require_acceptable(invitation_token, info.email)
        tenant = self.tenants.require_active(invitation.tenant_id)

        existing = self.store.get_user_by_email(info.email, tenant.id)
        if existing is not None:
            user = existing
            if user.oauth_provider != provider or user.oauth_provider_id != info.provider_subject_id:
                user = link_oauth(user, provider, info.provider_subject_id)
            user = mark_email_verified(update_profile(user, info.name, info.picture))
            if user.status == UserStatus.PENDING:
                user = replace(user, status=UserStatus.ACTIVE)
            self.users.save(user)
            self.invitations.consume(invitation, user.id)
            logger.info(
                "OAuth identity linked to existing account",
                extra={"event": "oauth_linked", "user_id": user.id, "provider": provider.value},
            )
            return user, tenant

        user = new_user(
            tenant.id,
            info.email,
            info.name or info.email,
            invitation.scopes or resolve_scopes(),
            UserStatus.ACTIVE,
            email_verified=True,
            oauth=(provider, info),
        )
        self.users.register(user)
        try:
            self.invitations.consume(invitation, user.id)
        except ConflictError:
            self.users.unregister(user)
            raise
        logger.info(
            "OAuth account created",
            extra={"event": "oauth_registered", "user_id": user.id, "provider": provider.value},
        )
        return user, tenant

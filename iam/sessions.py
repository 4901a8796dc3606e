"""
iam/sessions.py -- Login sessions, token refresh and logout.

establish() is the single exit point of every successful login (OAuth
callback and passwordless verify). It issues an access + refresh token pair,
persists the refresh token hash and a session row, and stamps last login.

A refresh token is honoured only when:
  - its JWT verifies (signature, expiry, issuer, audience), and
  - an unrevoked, unexpired row exists for its hash, and
  - the user can still log in and the tenant is still active.

logout() revokes every refresh token and session of the user. Revocation is
a flag; the reaper deletes the rows later.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from core.config import Settings
from iam.credentials import generate_token, hash_token
from iam.errors import AuthorizationError, BusinessRuleError
from iam.models import ClientInfo, RefreshToken, Tenant, TokenBundle, User, UserSession
from iam.store import IAMStore
from iam.tenants import is_active as tenant_is_active
from iam.tokens import create_access_token, create_refresh_token, decode_refresh_token
from iam.users import can_login

logger = logging.getLogger("tenantgate.iam.sessions")


def _invalid_refresh() -> AuthorizationError:
    return AuthorizationError("Invalid or expired refresh token.", "invalid_refresh_token")


class SessionManager:
    def __init__(self, store: IAMStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def issue_access_token(self, user: User) -> str:
        return create_access_token(user.id, user.tenant_id, user.email, user.name, user.scopes)

    def establish(self, user: User, tenant: Tenant, client: ClientInfo | None = None) -> TokenBundle:
        client = client or ClientInfo()
        now = datetime.now(timezone.utc)
        refresh_expires = now + timedelta(seconds=self.settings.refresh_token_expire_seconds)

        access_token = self.issue_access_token(user)
        refresh_token = create_refresh_token(user.id)

        self.store.create_refresh_token(
            RefreshToken(
                id=str(uuid.uuid4()),
                token_hash=hash_token(refresh_token),
                user_id=user.id,
                tenant_id=tenant.id,
                expires_at=refresh_expires,
                created_at=now,
            )
        )
        self.store.create_session(
            UserSession(
                id=str(uuid.uuid4()),
                user_id=user.id,
                tenant_id=tenant.id,
                session_token=generate_token(32),
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                expires_at=refresh_expires,
                last_activity=now,
                created_at=now,
            )
        )
        self.store.update_last_login(user.id)
        logger.info(
            "Login session established",
            extra={"event": "login", "user_id": user.id, "tenant_id": tenant.id},
        )
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.settings.access_token_expire_seconds,
            user=user,
            tenant=tenant,
        )

    def refresh(self, refresh_token: str) -> tuple[str, User]:
        """Return a new access token (and the user it describes)."""
        subject = decode_refresh_token(refresh_token)
        if subject is None:
            raise _invalid_refresh()
        row = self.store.get_refresh_token_by_hash(hash_token(refresh_token))
        if row is None or row.is_revoked or row.user_id != subject:
            raise _invalid_refresh()
        if row.expires_at <= datetime.now(timezone.utc):
            raise _invalid_refresh()

        user = self.store.get_user(subject)
        if user is None or not can_login(user):
            raise AuthorizationError("User is not allowed to log in.", "user_inactive", status_code=403)
        tenant = self.store.get_tenant(user.tenant_id)
        if tenant is None or not tenant_is_active(tenant):
            raise BusinessRuleError("Account access is currently unavailable", "tenant_inactive", status_code=403)

        logger.info("Access token refreshed", extra={"event": "token_refresh", "user_id": user.id})
        return self.issue_access_token(user), user

    def refresh_token_owner(self, refresh_token: str) -> str | None:
        """User id behind a validly signed, unrevoked refresh token, or None."""
        subject = decode_refresh_token(refresh_token)
        if subject is None:
            return None
        row = self.store.get_refresh_token_by_hash(hash_token(refresh_token))
        if row is None or row.is_revoked or row.user_id != subject:
            return None
        return subject

    def logout(self, user_id: str) -> None:
        tokens = self.store.revoke_user_refresh_tokens(user_id)
        sessions = self.store.revoke_user_sessions(user_id)
        logger.info(
            "Logged out (%d refresh tokens, %d sessions revoked)",
            tokens,
            sessions,
            extra={"event": "logout", "user_id": user_id},
        )

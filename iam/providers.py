"""
iam/providers.py -- OAuth identity providers (Google, Microsoft).

Each provider implements three steps of the authorization code flow:
  get_auth_url(state)            -> URL to redirect the browser to
  exchange_token(code)           -> provider access token
  get_user_info(access_token)    -> OAuthUserInfo (normalized identity)

HTTP is done with authlib's httpx OAuth2Client. Payload normalization is a
pure function per provider so it can be tested without the network.

Provider quirks:
  Google     -- userinfo v2 returns verified_email; access_type=offline and
                prompt=consent are sent so a provider refresh token is issued.
  Microsoft  -- Graph /me returns mail, or userPrincipalName when mail is
                empty. Graph has no verification flag; work and school
                accounts are directory-managed, so the address counts as
                verified.

build_providers() returns a registry keyed by OAuthProvider containing only
providers with both client id and secret configured. Flow code looks up the
registry and never switches on provider type.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import OAuth2Client

from core.config import Settings
from iam.errors import InternalError
from iam.models import OAuthProvider, OAuthUserInfo

logger = logging.getLogger("tenantgate.iam.providers")

_TIMEOUT = 10.0


class IdentityProvider(ABC):
    """Authorization-code client for one provider."""

    provider: OAuthProvider
    authorize_url: str
    token_url: str
    userinfo_url: str
    scope: str
    extra_auth_params: dict[str, str] = {}

    def __init__(self, client_id: str, client_secret: str, redirect_url: str) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url

    def _client(self, **kwargs) -> OAuth2Client:
        return OAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.scope,
            redirect_uri=self.redirect_url,
            token_endpoint_auth_method="client_secret_post",
            timeout=_TIMEOUT,
            **kwargs,
        )

    def get_auth_url(self, state: str) -> str:
        with self._client() as client:
            url, _ = client.create_authorization_url(self.authorize_url, state=state, **self.extra_auth_params)
        return url

    def exchange_token(self, code: str) -> str:
        """Trade the authorization code for the provider's access token."""
        try:
            with self._client() as client:
                token = client.fetch_token(self.token_url, code=code)
        except (AuthlibBaseError, httpx.HTTPError) as exc:
            logger.warning("%s token exchange failed: %s", self.provider.value, exc)
            raise InternalError("Failed to exchange authorization code.", "token_exchange_failed", cause=exc) from exc
        access_token = token.get("access_token")
        if not access_token:
            raise InternalError("Provider returned no access token.", "token_exchange_failed")
        return access_token

    def get_user_info(self, access_token: str) -> OAuthUserInfo:
        try:
            with self._client(token={"access_token": access_token, "token_type": "Bearer"}) as client:
                resp = client.get(self.userinfo_url)
                resp.raise_for_status()
                payload = resp.json()
        except (AuthlibBaseError, httpx.HTTPError, ValueError) as exc:
            logger.warning("%s user info request failed: %s", self.provider.value, exc)
            raise InternalError("Failed to fetch user info.", "userinfo_failed", cause=exc) from exc
        return self.normalize(payload)

    @staticmethod
    @abstractmethod
    def normalize(payload: dict) -> OAuthUserInfo: ...


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


def normalize_google(payload: dict) -> OAuthUserInfo:
    return OAuthUserInfo(
        provider_subject_id=str(payload.get("id", "")),
        email=(payload.get("email") or "").strip().lower(),
        name=payload.get("name") or "",
        picture=payload.get("picture") or None,
        email_verified=bool(payload.get("verified_email", False)),
    )


class GoogleProvider(IdentityProvider):
    provider = OAuthProvider.GOOGLE
    authorize_url = "https://accounts.google.com/o/oauth2/auth"
    token_url = "https://oauth2.googleapis.com/token"  # noqa: S105
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    scope = "openid email profile"
    extra_auth_params = {"access_type": "offline", "prompt": "consent"}

    normalize = staticmethod(normalize_google)


# ---------------------------------------------------------------------------
# Microsoft
# ---------------------------------------------------------------------------


def normalize_microsoft(payload: dict) -> OAuthUserInfo:
    email = payload.get("mail") or payload.get("userPrincipalName") or ""
    return OAuthUserInfo(
        provider_subject_id=str(payload.get("id", "")),
        email=email.strip().lower(),
        name=payload.get("displayName") or "",
        picture=None,
        email_verified=True,
    )


class MicrosoftProvider(IdentityProvider):
    provider = OAuthProvider.MICROSOFT
    authorize_url = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
    token_url = "https://login.microsoftonline.com/common/oauth2/v2.0/token"  # noqa: S105
    userinfo_url = "https://graph.microsoft.com/v1.0/me"
    scope = "openid email profile User.Read"
    extra_auth_params = {"response_mode": "query"}

    normalize = staticmethod(normalize_microsoft)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_providers(settings: Settings) -> dict[OAuthProvider, IdentityProvider]:
    """Instantiate every provider whose credentials are configured."""
    providers: dict[OAuthProvider, IdentityProvider] = {}
    if settings.google_client_id and settings.google_client_secret:
        providers[OAuthProvider.GOOGLE] = GoogleProvider(
            settings.google_client_id, settings.google_client_secret, settings.google_redirect_url
        )
        logger.info("Google OAuth provider registered")
    if settings.microsoft_client_id and settings.microsoft_client_secret:
        providers[OAuthProvider.MICROSOFT] = MicrosoftProvider(
            settings.microsoft_client_id, settings.microsoft_client_secret, settings.microsoft_redirect_url
        )
        logger.info("Microsoft OAuth provider registered")
    return providers

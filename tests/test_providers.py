"""Tests for iam/providers.py -- payload normalization and the registry.

No network: only URL building and the pure normalize_* functions are
exercised. Token exchange failures are simulated by patching authlib's
OAuth2Client.fetch_token.
"""

from __future__ import annotations

from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from core.config import Settings
from iam.errors import InternalError
from iam.models import OAuthProvider
from iam.providers import GoogleProvider, MicrosoftProvider, build_providers, normalize_google, normalize_microsoft


class TestNormalize:
    def test_google_payload(self):
        info = normalize_google(
            {
                "id": 1234567890,
                "email": " Person@Example.COM ",
                "name": "Person",
                "picture": "https://lh3.example/p.png",
                "verified_email": True,
            }
        )
        assert info.provider_subject_id == "1234567890"
        assert info.email == "person@example.com"
        assert info.picture == "https://lh3.example/p.png"
        assert info.email_verified

    def test_google_unverified_by_default(self):
        info = normalize_google({"id": "1", "email": "a@b.test"})
        assert not info.email_verified
        assert info.name == ""
        assert info.picture is None

    def test_microsoft_prefers_mail(self):
        info = normalize_microsoft({"id": "ms-1", "mail": "Work@Corp.test", "userPrincipalName": "upn@corp.test"})
        assert info.email == "work@corp.test"
        assert info.email_verified

    def test_microsoft_falls_back_to_upn(self):
        payload = {"id": "ms-1", "mail": None, "userPrincipalName": "UPN@corp.test", "displayName": "U"}
        info = normalize_microsoft(payload)
        assert info.email == "upn@corp.test"
        assert info.name == "U"


class TestAuthUrl:
    def test_google_url_carries_offline_access(self):
        provider = GoogleProvider("cid", "secret", "https://app.test/cb")
        query = parse_qs(urlparse(provider.get_auth_url("st4te")).query)
        assert query["state"] == ["st4te"]
        assert query["client_id"] == ["cid"]
        assert query["redirect_uri"] == ["https://app.test/cb"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["response_type"] == ["code"]

    def test_microsoft_url(self):
        provider = MicrosoftProvider("mid", "secret", "https://app.test/cb/ms")
        url = provider.get_auth_url("abc")
        assert url.startswith("https://login.microsoftonline.com/common/oauth2/v2.0/authorize")
        assert "User.Read" in parse_qs(urlparse(url).query)["scope"][0]


def test_exchange_failure_becomes_internal_error():
    provider = GoogleProvider("cid", "secret", "https://app.test/cb")
    with patch(
        "authlib.integrations.httpx_client.OAuth2Client.fetch_token",
        side_effect=httpx.ConnectError("unreachable"),
    ):
        with pytest.raises(InternalError) as exc_info:
            provider.exchange_token("code")
    assert exc_info.value.code == "token_exchange_failed"
    assert isinstance(exc_info.value.cause, httpx.ConnectError)


def test_exchange_without_access_token():
    provider = GoogleProvider("cid", "secret", "https://app.test/cb")
    with patch("authlib.integrations.httpx_client.OAuth2Client.fetch_token", return_value={"token_type": "Bearer"}):
        with pytest.raises(InternalError):
            provider.exchange_token("code")


class TestRegistry:
    def test_only_configured_providers(self):
        settings = Settings(
            secret_key="x" * 32,
            google_client_id="g",
            google_client_secret="gs",
        )
        providers = build_providers(settings)
        assert list(providers) == [OAuthProvider.GOOGLE]
        assert providers[OAuthProvider.GOOGLE].redirect_url == settings.google_redirect_url

    def test_half_configured_provider_skipped(self):
        settings = Settings(secret_key="x" * 32, microsoft_client_id="m", microsoft_client_secret="")
        assert build_providers(settings) == {}

    def test_both(self):
        settings = Settings(
            secret_key="x" * 32,
            google_client_id="g",
            google_client_secret="gs",
            microsoft_client_id="m",
            microsoft_client_secret="ms",
        )
        assert set(build_providers(settings)) == {OAuthProvider.GOOGLE, OAuthProvider.MICROSOFT}

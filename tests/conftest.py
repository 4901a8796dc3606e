"""
tests/conftest.py -- Shared test fixtures for TenantGate.

This module provides:
  - engine: every iam service wired over an isolated in-memory store, with a
    capturing notifier and a fake Google provider (no network)
  - seed_tenant(): a tenant plus an ACTIVE super_admin user
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

Environment must be set before any core/iam import: DEBUG lets
get_settings() auto-generate SECRET_KEY, OTP_HASH_ROUNDS keeps bcrypt fast,
and the rate limits are raised so route tests are not throttled.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace

# CRITICAL: Set before any core/iam import (settings are read at import time).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("OTP_HASH_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("OTP_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from core.config import get_settings
from iam.models import OAuthProvider, OAuthUserInfo, OTPPurpose, SubscriptionPlan
from iam.otp import NotificationSender
from iam.providers import GoogleProvider
from iam.state import InMemoryStateStore
from iam.store import IAMStore
from iam.tokens import create_access_token

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class CapturingNotifier(NotificationSender):
    """Records every code instead of delivering it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, OTPPurpose]] = []
        self.fail = False

    def send_otp(self, contact: str, code: str, purpose: OTPPurpose) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((contact, code, purpose))

    def last_code(self, contact: str) -> str:
        for sent_to, code, _purpose in reversed(self.sent):
            if sent_to == contact:
                return code
        raise AssertionError(f"no code sent to {contact}")


class FakeGoogle(GoogleProvider):
    """Real authorization URL, canned token exchange and user info."""

    def __init__(self) -> None:
        super().__init__("test-client-id", "test-client-secret", "http://testserver/api/v1/auth/callback/google")
        self.info = OAuthUserInfo(provider_subject_id="g-1", email="", name="", email_verified=True)
        self.codes: list[str] = []

    def exchange_token(self, code: str) -> str:
        self.codes.append(code)
        return f"provider-token-{code}"

    def get_user_info(self, access_token: str) -> OAuthUserInfo:
        return self.info

    def returns(self, email: str, subject: str = "g-1", name: str = "Test User", verified: bool = True) -> None:
        self.info = OAuthUserInfo(
            provider_subject_id=subject,
            email=email,
            name=name,
            picture="https://example.test/p.png",
            email_verified=verified,
        )


# ---------------------------------------------------------------------------
# Store and service helpers
# ---------------------------------------------------------------------------


def _make_test_store(name: str) -> IAMStore:
    """Isolated named shared-memory SQLite store."""
    return IAMStore(db_url=f"sqlite:///file:test_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def _wire(store: IAMStore) -> SimpleNamespace:
    ns = SimpleNamespace()
    ns.notifier = CapturingNotifier()
    ns.google = FakeGoogle()
    wire_services(
        ns,
        store,
        InMemoryStateStore(ttl_seconds=600),
        get_settings(),
        providers={OAuthProvider.GOOGLE: ns.google},
        notifier=ns.notifier,
    )
    return ns


def seed_tenant(engine: SimpleNamespace, company: str = "Acme", plan: SubscriptionPlan = SubscriptionPlan.TRIAL):
    """Create a tenant and its ACTIVE super_admin. Returns (tenant, admin)."""
    tenant = engine.tenants.create_tenant(company, plan)
    admin = engine.users.create_user(tenant.id, f"admin@{company.lower()}.test", "Admin", template="super_admin")
    return engine.tenants.get_tenant(tenant.id), admin


def bearer(user) -> dict[str, str]:
    token = create_access_token(user.id, user.tenant_id, user.email, user.name, user.scopes, expire_seconds=3600)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def store() -> Generator[IAMStore, None, None]:
    s = _make_test_store("unit")
    yield s
    s.close()


@pytest.fixture
def engine(store: IAMStore) -> SimpleNamespace:
    return _wire(store)


@pytest.fixture
def seed(engine: SimpleNamespace):
    """seed(company=..., plan=...) -> (tenant, super_admin) in the test engine."""

    def _seed(company: str = "Acme", plan: SubscriptionPlan = SubscriptionPlan.TRIAL):
        return seed_tenant(engine, company, plan)

    return _seed


@pytest.fixture
def auth_headers():
    """auth_headers(user) -> Authorization header carrying a fresh access token."""
    return bearer


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: SimpleNamespace):
    """Return a lifespan that installs the test engine's services on app.state.

    The reaper_task is a long-sleeping coroutine so shutdown can cancel a real
    asyncio.Task; MagicMock would fail on .cancel().
    """

    @asynccontextmanager
    async def test_lifespan(app):
        for name, value in vars(engine).items():
            setattr(app.state, name, value)
        app.state.reaper_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.reaper_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[SimpleNamespace, None, None]:
    """Yield a namespace with client, engine, tenant, admin and admin headers.

    One TestClient per test module; tests that need fresh data create their
    own tenants through ctx.engine.
    """
    store = _make_test_store("api")
    engine = _wire(store)
    tenant, admin = seed_tenant(engine)
    # The seeded tenant's super_admin doubles as the platform operator.
    engine.tenants.platform_tenant_id = tenant.id

    app.router.lifespan_context = _patch_lifespan(engine)
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        yield SimpleNamespace(client=client, engine=engine, tenant=tenant, admin=admin, headers=bearer(admin))

    store.close()

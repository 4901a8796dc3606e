"""Tests for iam/oauth.py -- OAuth login orchestration with a fake provider.

The FakeGoogle provider (conftest.py) builds a real authorization URL but
returns canned tokens and user info, so the whole flow runs offline.

Covers:
- initiate_login stores provider + invitation under a one-time state
- invitation-gated registration creates an ACTIVE user and consumes the invitation
- account linking onto an existing user (no duplicate account)
- state replay, provider mismatch, provider error and missing parameters
- unverified email, missing invitation, suspended user/tenant
"""

from __future__ import annotations

from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import pytest

from iam.errors import AuthorizationError, BusinessRuleError, ConflictError, ValidationError
from iam.models import InvitationStatus, OAuthProvider, UserStatus
from iam.oauth import parse_provider


def _login(engine, invitation_token=None) -> str:
    _, state = engine.oauth_flow.initiate_login("google", invitation_token)
    return state


def test_parse_provider():
    assert parse_provider("google") is OAuthProvider.GOOGLE
    assert parse_provider(" Microsoft ") is OAuthProvider.MICROSOFT
    assert parse_provider(OAuthProvider.GOOGLE) is OAuthProvider.GOOGLE
    with pytest.raises(ValidationError) as exc_info:
        parse_provider("github")
    assert exc_info.value.code == "unsupported_provider"


def test_unconfigured_provider_rejected(engine):
    with pytest.raises(ValidationError):
        engine.oauth_flow.initiate_login("microsoft")


def test_initiate_login_builds_url_and_state(engine):
    url, state = engine.oauth_flow.initiate_login("google", "inv-token")
    query = parse_qs(urlparse(url).query)
    assert url.startswith("https://accounts.google.com/o/oauth2/auth")
    assert query["state"] == [state]
    assert query["client_id"] == ["test-client-id"]
    assert engine.state_store.validate_state(state)
    assert engine.state_store.get_state_data(state) == {"provider": "GOOGLE", "invitation_token": "inv-token"}


def test_registration_via_invitation(engine, seed):
    tenant, admin = seed()
    inv = engine.invitations.create_invitation(tenant.id, "new@acme.test", admin.id, template="recruiter")
    engine.google.returns("New@Acme.test", subject="g-42", name="New Person")

    bundle = engine.oauth_flow.handle_callback("google", "code-1", _login(engine, inv.token))

    user = bundle.user
    assert user.email == "new@acme.test"
    assert user.status == UserStatus.ACTIVE
    assert user.oauth_provider == OAuthProvider.GOOGLE
    assert user.oauth_provider_id == "g-42"
    assert user.email_verified
    assert user.scopes == inv.scopes
    assert bundle.tenant.id == tenant.id
    assert engine.store.get_invitation(inv.id).status == InvitationStatus.ACCEPTED
    assert engine.tenants.get_tenant(tenant.id).current_users == 2
    assert engine.google.codes == ["code-1"]


def test_existing_user_is_linked_not_duplicated(engine, seed):
    tenant, admin = seed()
    existing = engine.users.create_user(tenant.id, "link@acme.test", "Old Name")
    inv = engine.invitations.create_invitation(tenant.id, "other@acme.test", admin.id)
    # An invitation can only target a new address, so re-point it at the existing user.
    engine.store.delete_invitation(inv.id)
    engine.store.create_invitation(replace(inv, email="link@acme.test"))
    engine.google.returns("link@acme.test", subject="g-7", name="Fresh Name")

    bundle = engine.oauth_flow.handle_callback("google", "code", _login(engine, inv.token))

    assert bundle.user.id == existing.id
    linked = engine.store.get_user(existing.id)
    assert linked.oauth_provider == OAuthProvider.GOOGLE
    assert linked.oauth_provider_id == "g-7"
    assert linked.name == "Fresh Name"
    assert linked.otp_enabled
    assert len(engine.store.list_users(tenant.id)) == 2
    assert engine.store.get_invitation(inv.id).status == InvitationStatus.ACCEPTED


def test_state_is_one_time(engine, seed):
    tenant, admin = seed()
    inv = engine.invitations.create_invitation(tenant.id, "once@acme.test", admin.id)
    engine.google.returns("once@acme.test")
    state = _login(engine, inv.token)
    engine.oauth_flow.handle_callback("google", "code", state)
    with pytest.raises(ValidationError) as exc_info:
        engine.oauth_flow.handle_callback("google", "code", state)
    assert exc_info.value.code == "invalid_state"


def test_state_bound_to_provider(engine):
    state = _login(engine, "inv")
    with pytest.raises(ValidationError) as exc_info:
        engine.oauth_flow.handle_callback("microsoft", "code", state)
    assert exc_info.value.code == "invalid_state"


def test_provider_error_and_missing_parameters(engine):
    with pytest.raises(AuthorizationError) as exc_info:
        engine.oauth_flow.handle_callback("google", None, None, error="access_denied")
    assert exc_info.value.details == {"error": "access_denied"}
    with pytest.raises(ValidationError) as exc_info:
        engine.oauth_flow.handle_callback("google", "code", None)
    assert exc_info.value.code == "missing_parameters"


def test_unverified_email_rejected(engine, seed):
    tenant, admin = seed()
    inv = engine.invitations.create_invitation(tenant.id, "unv@acme.test", admin.id)
    engine.google.returns("unv@acme.test", verified=False)
    with pytest.raises(AuthorizationError) as exc_info:
        engine.oauth_flow.handle_callback("google", "code", _login(engine, inv.token))
    assert exc_info.value.code == "email_not_verified"
    assert engine.store.get_invitation(inv.id).status == InvitationStatus.PENDING


def test_invitation_required(engine):
    engine.google.returns("walk-in@acme.test")
    with pytest.raises(AuthorizationError) as exc_info:
        engine.oauth_flow.handle_callback("google", "code", _login(engine))
    assert exc_info.value.code == "invitation_required"
    assert exc_info.value.status_code == 403


def test_invitation_email_mismatch(engine, seed):
    tenant, admin = seed()
    inv = engine.invitations.create_invitation(tenant.id, "invited@acme.test", admin.id)
    engine.google.returns("intruder@acme.test")
    with pytest.raises(ValidationError) as exc_info:
        engine.oauth_flow.handle_callback("google", "code", _login(engine, inv.token))
    assert exc_info.value.message == "Email does not match invitation"


def test_full_tenant_keeps_invitation_pending(engine, seed):
    tenant, admin = seed()
    inv = engine.invitations.create_invitation(tenant.id, "p0@acme.test", admin.id)
    for i in range(4):
        engine.users.create_user(tenant.id, f"filler{i}@acme.test", "")
    engine.google.returns("p0@acme.test")
    with pytest.raises(BusinessRuleError) as exc_info:
        engine.oauth_flow.handle_callback("google", "code", _login(engine, inv.token))
    assert exc_info.value.code == "tenant_user_limit"
    assert engine.store.get_invitation(inv.id).status == InvitationStatus.PENDING
    assert engine.tenants.get_tenant(tenant.id).current_users == 5


def test_full_tenant_still_links_existing_user(engine, seed):
    tenant, admin = seed()
    existing = engine.users.create_user(tenant.id, "member@acme.test", "")
    inv = engine.invitations.create_invitation(tenant.id, "spare@acme.test", admin.id)
    for i in range(3):
        engine.users.create_user(tenant.id, f"filler{i}@acme.test", "")
    full = engine.tenants.get_tenant(tenant.id)
    assert full.current_users == full.max_users == 5
    engine.store.delete_invitation(inv.id)
    engine.store.create_invitation(replace(inv, email="member@acme.test"))
    engine.google.returns("member@acme.test", subject="g-full")

    bundle = engine.oauth_flow.handle_callback("google", "code", _login(engine, inv.token))

    assert bundle.user.id == existing.id
    assert engine.store.get_user(existing.id).oauth_provider_id == "g-full"
    assert engine.tenants.get_tenant(tenant.id).current_users == 5
    assert engine.store.get_invitation(inv.id).status == InvitationStatus.ACCEPTED


def test_lost_consume_race_unregisters_user(engine, seed, monkeypatch):
    tenant, admin = seed()
    inv = engine.invitations.create_invitation(tenant.id, "race@acme.test", admin.id)
    engine.google.returns("race@acme.test")

    def lose(invitation, user_id):
        raise ConflictError("Invitation has already been used.", "invitation_already_accepted")

    monkeypatch.setattr(engine.invitations, "consume", lose)
    with pytest.raises(ConflictError):
        engine.oauth_flow.handle_callback("google", "code", _login(engine, inv.token))
    assert engine.store.get_user_by_email("race@acme.test", tenant.id) is None
    assert engine.tenants.get_tenant(tenant.id).current_users == 1


def test_suspended_tenant_cannot_log_in(engine, seed):
    tenant, admin = seed()
    inv = engine.invitations.create_invitation(tenant.id, "s@acme.test", admin.id)
    engine.tenants.suspend_tenant(tenant.id)
    engine.google.returns("s@acme.test")
    with pytest.raises(BusinessRuleError) as exc_info:
        engine.oauth_flow.handle_callback("google", "code", _login(engine, inv.token))
    assert exc_info.value.status_code == 403


def test_callback_establishes_session(engine, seed):
    tenant, admin = seed()
    inv = engine.invitations.create_invitation(tenant.id, "sess@acme.test", admin.id)
    engine.google.returns("sess@acme.test")
    bundle = engine.oauth_flow.handle_callback("google", "code", _login(engine, inv.token))
    assert bundle.expires_in > 0
    access, user = engine.sessions.refresh(bundle.refresh_token)
    assert user.id == bundle.user.id
    assert engine.store.list_sessions(bundle.user.id)
    assert engine.store.get_user(bundle.user.id).last_login_at is not None

"""Unit tests for iam/invitations.py.

Covers:
- creation: scopes from list/template/default, permission and duplicate checks
- one pending invitation per (email, tenant)
- token validation messages and require_acceptable() failure kinds
- consume() succeeds exactly once
- revoke/delete rules, expiry sweep
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from iam.errors import AuthorizationError, BusinessRuleError, ConflictError, NotFoundError, ValidationError
from iam.invitations import accept, mark_as_expired
from iam.models import Invitation, InvitationStatus, SubscriptionPlan


def _expired_invitation(engine, tenant, admin, email="late@acme.test") -> Invitation:
    past = datetime.now(timezone.utc) - timedelta(days=10)
    invitation = Invitation(
        id=str(uuid.uuid4()),
        tenant_id=tenant.id,
        email=email,
        token=uuid.uuid4().hex,
        scopes=["users:read"],
        status=InvitationStatus.PENDING,
        invited_by=admin.id,
        expires_at=past + timedelta(days=7),
        created_at=past,
        updated_at=past,
    )
    engine.store.create_invitation(invitation)
    return invitation


class TestCreate:
    def test_defaults_to_viewer(self, engine, seed, settings):
        tenant, admin = seed()
        inv = engine.invitations.create_invitation(tenant.id, "New@Acme.test", admin.id)
        assert inv.email == "new@acme.test"
        assert inv.status == InvitationStatus.PENDING
        assert inv.scopes == ["users:read", "roles:read", "tenants:read", "reports:view"]
        assert len(inv.token) == 2 * settings.invitation_token_bytes
        lifetime = inv.expires_at - inv.created_at
        assert lifetime == timedelta(days=settings.invitation_expire_days)

    def test_template_and_explicit_scopes(self, engine, seed):
        tenant, admin = seed()
        by_template = engine.invitations.create_invitation(tenant.id, "r@acme.test", admin.id, template="recruiter")
        assert "candidates:*" in by_template.scopes
        explicit = engine.invitations.create_invitation(tenant.id, "e@acme.test", admin.id, scopes=["jobs:read"])
        assert explicit.scopes == ["jobs:read"]

    def test_inviter_needs_permission(self, engine, seed):
        tenant, _ = seed()
        viewer = engine.users.create_user(tenant.id, "viewer@acme.test", "")
        with pytest.raises(AuthorizationError) as exc_info:
            engine.invitations.create_invitation(tenant.id, "x@acme.test", viewer.id)
        assert exc_info.value.status_code == 403
        inviter = engine.users.create_user(tenant.id, "hr@acme.test", "", scopes=["users:invite", "jobs:read"])
        assert engine.invitations.create_invitation(tenant.id, "x@acme.test", inviter.id, scopes=["jobs:read"]).id

    def test_inviter_cannot_grant_scopes_it_lacks(self, engine, seed):
        tenant, _ = seed(plan=SubscriptionPlan.ENTERPRISE)
        manager = engine.users.create_user(tenant.id, "hr@acme.test", "", template="user_manager")

        for kwargs, excess in [
            ({"scopes": ["*"]}, ["*"]),
            ({"scopes": ["users:read", "api_keys:write"]}, ["api_keys:write"]),
            ({"template": "tenant_admin"}, ["roles:*", "settings:*", "api_keys:*", "tenants:read", "tenants:config"]),
            ({}, ["tenants:read", "reports:view"]),
        ]:
            with pytest.raises(AuthorizationError) as exc_info:
                engine.invitations.create_invitation(tenant.id, "alt@acme.test", manager.id, **kwargs)
            assert exc_info.value.code == "scope_escalation"
            assert exc_info.value.status_code == 403
            assert exc_info.value.details == {"scopes": excess}
        assert engine.store.get_pending_invitation("alt@acme.test", tenant.id) is None

        ok = engine.invitations.create_invitation(tenant.id, "alt@acme.test", manager.id, scopes=["users:read"])
        assert ok.scopes == ["users:read"]

    def test_inviter_from_other_tenant_rejected(self, engine, seed):
        tenant, _ = seed(company="One")
        _, foreign_admin = seed(company="Two")
        with pytest.raises(NotFoundError):
            engine.invitations.create_invitation(tenant.id, "x@one.test", foreign_admin.id)

    def test_existing_user_rejected(self, engine, seed):
        tenant, admin = seed()
        with pytest.raises(ConflictError) as exc_info:
            engine.invitations.create_invitation(tenant.id, admin.email, admin.id)
        assert exc_info.value.code == "user_already_exists"

    def test_one_pending_per_email(self, engine, seed):
        tenant, admin = seed()
        engine.invitations.create_invitation(tenant.id, "dup@acme.test", admin.id)
        with pytest.raises(ConflictError) as exc_info:
            engine.invitations.create_invitation(tenant.id, "DUP@acme.test", admin.id)
        assert exc_info.value.code == "invitation_exists"

    def test_pending_unique_index_backs_the_check(self, engine, seed):
        tenant, admin = seed()
        first = engine.invitations.create_invitation(tenant.id, "race@acme.test", admin.id)
        engine.store.get_pending_invitation = lambda email, tenant_id: None
        with pytest.raises(ConflictError):
            engine.invitations.create_invitation(tenant.id, "race@acme.test", admin.id)
        assert engine.store.get_invitation(first.id).status == InvitationStatus.PENDING

    def test_reinvite_after_revoke(self, engine, seed):
        tenant, admin = seed()
        inv = engine.invitations.create_invitation(tenant.id, "again@acme.test", admin.id)
        engine.invitations.revoke_invitation(inv.id, tenant.id)
        assert engine.invitations.create_invitation(tenant.id, "again@acme.test", admin.id).id != inv.id

    def test_inactive_tenant_rejected(self, engine, seed):
        tenant, admin = seed()
        engine.tenants.suspend_tenant(tenant.id)
        with pytest.raises(BusinessRuleError):
            engine.invitations.create_invitation(tenant.id, "x@acme.test", admin.id)


class TestTokens:
    def test_validate_token_messages(self, engine, seed):
        tenant, admin = seed()
        inv = engine.invitations.create_invitation(tenant.id, "v@acme.test", admin.id)
        assert engine.invitations.validate_token(inv.token).valid
        assert engine.invitations.validate_token("nope").message == "Invitation not found"
        engine.invitations.revoke_invitation(inv.id, tenant.id)
        result = engine.invitations.validate_token(inv.token)
        assert not result.valid
        assert result.message == "Invitation has been revoked"

    def test_require_acceptable_failures(self, engine, seed):
        tenant, admin = seed()
        inv = engine.invitations.create_invitation(tenant.id, "ok@acme.test", admin.id)
        with pytest.raises(BusinessRuleError) as exc_info:
            engine.invitations.require_acceptable("nope", "ok@acme.test")
        assert exc_info.value.message == "Invalid or expired invitation"
        assert exc_info.value.code == "invitation_invalid"
        with pytest.raises(ValidationError) as exc_info:
            engine.invitations.require_acceptable(inv.token, "someone-else@acme.test")
        assert exc_info.value.message == "Email does not match invitation"
        assert engine.invitations.require_acceptable(inv.token, " OK@acme.test ").id == inv.id

    def test_expired_is_gone(self, engine, seed):
        tenant, admin = seed()
        inv = _expired_invitation(engine, tenant, admin)
        with pytest.raises(BusinessRuleError) as exc_info:
            engine.invitations.require_acceptable(inv.token, inv.email)
        assert exc_info.value.status_code == 410
        assert engine.invitations.validate_token(inv.token).message == "Invitation has expired"

    @pytest.mark.parametrize(
        "status,code,status_code",
        [
            (InvitationStatus.ACCEPTED, "invitation_already_accepted", 409),
            (InvitationStatus.REVOKED, "invitation_revoked", 410),
            (InvitationStatus.EXPIRED, "invitation_expired", 410),
        ],
    )
    def test_accept_terminal_states(self, engine, seed, status, code, status_code):
        tenant, admin = seed()
        inv = engine.invitations.create_invitation(tenant.id, "t@acme.test", admin.id)
        with pytest.raises(BusinessRuleError) as exc_info:
            accept(replace(inv, status=status), admin.id)
        assert (exc_info.value.code, exc_info.value.status_code) == (code, status_code)

        stored = replace(inv, status=status)
        engine.store.delete_invitation(inv.id)
        engine.store.create_invitation(stored)
        with pytest.raises(BusinessRuleError) as exc_info:
            engine.invitations.require_acceptable(inv.token, inv.email)
        assert exc_info.value.code == code

    def test_accepted_and_expired_reports_accepted(self, engine, seed):
        tenant, admin = seed()
        inv = _expired_invitation(engine, tenant, admin)
        with pytest.raises(BusinessRuleError) as exc_info:
            accept(replace(inv, status=InvitationStatus.ACCEPTED), admin.id)
        assert exc_info.value.code == "invitation_already_accepted"

    def test_consume_exactly_once(self, engine, seed):
        tenant, admin = seed()
        inv = engine.invitations.create_invitation(tenant.id, "once@acme.test", admin.id)
        user = engine.users.create_user(tenant.id, "once@acme.test", "")
        accepted = engine.invitations.consume(inv, user.id)
        assert accepted.status == InvitationStatus.ACCEPTED
        assert accepted.accepted_by == user.id
        stored = engine.store.get_invitation(inv.id)
        assert stored.status == InvitationStatus.ACCEPTED
        assert stored.accepted_by == user.id
        with pytest.raises(ConflictError):
            engine.invitations.consume(inv, user.id)


class TestLifecycle:
    def test_revoke_rules(self, engine, seed):
        tenant, admin = seed()
        inv = engine.invitations.create_invitation(tenant.id, "rv@acme.test", admin.id)
        assert engine.invitations.revoke_invitation(inv.id, tenant.id).status == InvitationStatus.REVOKED
        with pytest.raises(ConflictError) as exc_info:
            engine.invitations.revoke_invitation(inv.id, tenant.id)
        assert exc_info.value.code == "invitation_already_revoked"

    def test_other_tenant_sees_not_found(self, engine, seed):
        tenant, admin = seed(company="One")
        other, _ = seed(company="Two")
        inv = engine.invitations.create_invitation(tenant.id, "x@one.test", admin.id)
        with pytest.raises(NotFoundError):
            engine.invitations.get_invitation(inv.id, other.id)
        with pytest.raises(NotFoundError):
            engine.invitations.revoke_invitation(inv.id, other.id)

    def test_delete_refuses_accepted(self, engine, seed):
        tenant, admin = seed()
        inv = engine.invitations.create_invitation(tenant.id, "del@acme.test", admin.id)
        user = engine.users.create_user(tenant.id, "del@acme.test", "")
        engine.invitations.consume(inv, user.id)
        with pytest.raises(ConflictError):
            engine.invitations.delete_invitation(inv.id, tenant.id)
        pending = engine.invitations.create_invitation(tenant.id, "gone@acme.test", admin.id)
        engine.invitations.delete_invitation(pending.id, tenant.id)
        assert engine.store.get_invitation(pending.id) is None

    def test_list_and_pending(self, engine, seed):
        tenant, admin = seed()
        a = engine.invitations.create_invitation(tenant.id, "a@acme.test", admin.id)
        b = engine.invitations.create_invitation(tenant.id, "b@acme.test", admin.id)
        engine.invitations.revoke_invitation(b.id, tenant.id)
        assert {i.id for i in engine.invitations.list_invitations(tenant.id)} == {a.id, b.id}
        assert [i.id for i in engine.invitations.list_pending(tenant.id)] == [a.id]

    def test_cleanup_expired(self, engine, seed):
        tenant, admin = seed()
        late = _expired_invitation(engine, tenant, admin)
        fresh = engine.invitations.create_invitation(tenant.id, "fresh@acme.test", admin.id)
        assert engine.invitations.cleanup_expired() == 1
        assert engine.store.get_invitation(late.id).status == InvitationStatus.EXPIRED
        assert engine.store.get_invitation(fresh.id).status == InvitationStatus.PENDING
        assert engine.invitations.cleanup_expired() == 0

    def test_mark_as_expired_is_pure(self, engine, seed):
        tenant, admin = seed()
        late = _expired_invitation(engine, tenant, admin)
        assert mark_as_expired(late).status == InvitationStatus.EXPIRED
        assert late.status == InvitationStatus.PENDING

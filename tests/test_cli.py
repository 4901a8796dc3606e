"""
tests/test_cli.py -- Tests for the administrative command line (main.py).

main() builds its own IAMStore from DATABASE_URL; these tests patch it to
return the isolated test store so results can be checked afterwards.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

import main as cli
from iam.models import InvitationStatus, SubscriptionPlan, TenantStatus, UserStatus


def _run(store, monkeypatch, *argv: str) -> None:
    monkeypatch.setattr(store, "close", lambda: None)
    with patch.object(cli, "IAMStore", return_value=store), patch("sys.argv", ["tenantgate", *argv]):
        cli.main()


def test_bootstrap_creates_tenant_and_super_admin(store, monkeypatch, capsys):
    _run(store, monkeypatch, "bootstrap", "--company", "Acme Corp", "--email", "Root@Acme.test", "--plan", "basic")

    (tenant,) = store.list_tenants()
    assert tenant.company_name == "Acme Corp"
    assert tenant.subscription_plan == SubscriptionPlan.BASIC
    assert tenant.status == TenantStatus.ACTIVE
    assert tenant.current_users == 1

    admin = store.get_user_by_email("root@acme.test", tenant.id)
    assert admin.status == UserStatus.ACTIVE
    assert admin.scopes == ["*"]

    out = capsys.readouterr().out
    assert "bootstrap complete" in out
    assert tenant.id in out
    assert f"PLATFORM_TENANT_ID={tenant.id}" in out


def test_invite_prints_token(store, monkeypatch, capsys):
    _run(store, monkeypatch, "bootstrap", "--company", "Acme", "--email", "root@acme.test")
    tenant = store.list_tenants()[0]
    admin = store.get_user_by_email("root@acme.test", tenant.id)
    capsys.readouterr()

    _run(
        store,
        monkeypatch,
        "invite",
        "--tenant-id",
        tenant.id,
        "--email",
        "dev@acme.test",
        "--invited-by",
        admin.id,
        "--scope",
        "jobs:read",
        "--scope",
        "jobs:write",
    )

    invitation = store.get_pending_invitation("dev@acme.test", tenant.id)
    assert invitation.status == InvitationStatus.PENDING
    assert invitation.scopes == ["jobs:read", "jobs:write"]
    assert f"Token:    {invitation.token}" in capsys.readouterr().out


def test_engine_error_exits_nonzero(store, monkeypatch, capsys):
    with pytest.raises(SystemExit) as exc_info:
        _run(store, monkeypatch, "invite", "--tenant-id", "nope", "--email", "x@y.test", "--invited-by", "u")
    assert exc_info.value.code == 1
    assert "[!] Tenant not found. (tenant_not_found)" in capsys.readouterr().out

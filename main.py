#!/usr/bin/env python3
"""
TenantGate -- administrative command line.

A fresh deployment has no tenants and no users, and every login path is
invitation-gated or requires an existing account. These commands create the
first tenant, its first administrator, and further invitations.

Usage:
  python main.py bootstrap --company "Acme Corp" --email admin@acme.test
  python main.py bootstrap --company "Acme Corp" --email admin@acme.test --plan professional
  python main.py invite --tenant-id <id> --email new@acme.test --invited-by <user-id> --template recruiter

Environment variables:
  DATABASE_URL        SQLAlchemy URL of the identity database (default: sqlite:///tenantgate.db)
  SECRET_KEY          Required unless DEBUG=true (see core/config.py)
  PLATFORM_TENANT_ID  Tenant whose admins manage every tenant (printed by bootstrap)
"""

import argparse
import sys

from core.config import get_settings
from iam.errors import IAMError
from iam.invitations import InvitationService
from iam.models import SubscriptionPlan
from iam.store import IAMStore
from iam.tenants import TenantService
from iam.users import UserService


def _bootstrap(store: IAMStore, args: argparse.Namespace) -> None:
    """Create a tenant and its first super_admin user (ACTIVE, email-code login)."""
    settings = get_settings()
    tenants = TenantService(store, settings)
    users = UserService(store, tenants)

    tenant = tenants.create_tenant(args.company, SubscriptionPlan(args.plan.upper()))
    admin = users.create_user(tenant.id, args.email, args.name or "", template="super_admin")

    print("\nTenantGate -- bootstrap complete")
    print("─" * 40)
    print(f"  Tenant:   {tenant.company_name} ({tenant.id})")
    print(f"  Plan:     {tenant.subscription_plan.value} (max {tenant.max_users} users)")
    print(f"  Admin:    {admin.email} ({admin.id})")
    print("\n  Log in with an email code:")
    print("    POST /api/v1/auth/passwordless/login/initiate")
    print(f'    {{"email": "{admin.email}", "tenant_id": "{tenant.id}"}}\n')
    if not settings.platform_tenant_id:
        print("  To let this tenant's admins manage every tenant, set:")
        print(f"    PLATFORM_TENANT_ID={tenant.id}\n")


def _invite(store: IAMStore, args: argparse.Namespace) -> None:
    """Create an invitation and print its token (needed for OAuth and signup)."""
    settings = get_settings()
    tenants = TenantService(store, settings)
    invitations = InvitationService(store, tenants, settings)

    scopes = args.scope or None
    invitation = invitations.create_invitation(
        args.tenant_id,
        args.email,
        args.invited_by,
        scopes=scopes,
        template=None if scopes else args.template,
    )
    print(f"\n  Invitation for {invitation.email} created ({invitation.id}).")
    print(f"  Scopes:   {', '.join(invitation.scopes)}")
    print(f"  Expires:  {invitation.expires_at.isoformat()}")
    print(f"  Token:    {invitation.token}\n")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="tenantgate",
        description="Administrative commands for the TenantGate identity service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py bootstrap --company "Acme Corp" --email admin@acme.test
  python main.py invite --tenant-id T --email dev@acme.test --invited-by U --template viewer
  python main.py invite --tenant-id T --email bot@acme.test --invited-by U --scope jobs:read --scope jobs:write
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    boot = sub.add_parser("bootstrap", help="Create a tenant and its first administrator")
    boot.add_argument("--company", required=True, help="Tenant company name")
    boot.add_argument("--email", required=True, help="Administrator email address")
    boot.add_argument("--name", default="", help="Administrator display name (default: the email)")
    boot.add_argument(
        "--plan",
        choices=[p.value.lower() for p in SubscriptionPlan],
        default="trial",
        help="Subscription plan (default: trial)",
    )

    inv = sub.add_parser("invite", help="Invite an email address into a tenant")
    inv.add_argument("--tenant-id", required=True, help="Tenant to invite into")
    inv.add_argument("--email", required=True, help="Invitee email address")
    inv.add_argument("--invited-by", required=True, help="ID of an admin (or users:invite) user in the tenant")
    inv.add_argument("--template", default=None, help="Scope group to grant (default: viewer)")
    inv.add_argument("--scope", action="append", metavar="SCOPE", help="Explicit scope; repeat for several")

    args = parser.parse_args()

    store = IAMStore(db_url=get_settings().database_url)
    try:
        if args.command == "bootstrap":
            _bootstrap(store, args)
        else:
            _invite(store, args)
    except IAMError as exc:
        print(f"  [!] {exc.message} ({exc.code})")
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()

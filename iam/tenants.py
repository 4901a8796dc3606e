"""
iam/tenants.py -- Tenant rules and the tenant service.

Rules are pure functions over Tenant values; they return a new Tenant and
never mutate the argument. TenantService does the persistence.

Plan ceilings (configurable via settings):
  TRIAL 5, BASIC 5, PROFESSIONAL 50, ENTERPRISE 500.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from core.config import Settings
from iam import scopes as scope_model
from iam.errors import BusinessRuleError, NotFoundError, ValidationError
from iam.models import AuthContext, SubscriptionPlan, Tenant, TenantStatus
from iam.store import IAMStore

logger = logging.getLogger("tenantgate.iam.tenants")

_DEFAULT_MAX_USERS = 1


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def plan_max_users(plan: SubscriptionPlan, settings: Settings) -> int:
    ceilings = {
        SubscriptionPlan.TRIAL: settings.plan_max_users_trial,
        SubscriptionPlan.BASIC: settings.plan_max_users_basic,
        SubscriptionPlan.PROFESSIONAL: settings.plan_max_users_professional,
        SubscriptionPlan.ENTERPRISE: settings.plan_max_users_enterprise,
    }
    return ceilings.get(plan, _DEFAULT_MAX_USERS)


def is_active(tenant: Tenant) -> bool:
    """A tenant is usable while ACTIVE or still in TRIAL."""
    return tenant.status in (TenantStatus.ACTIVE, TenantStatus.TRIAL)


def can_add_user(tenant: Tenant) -> bool:
    return tenant.current_users < tenant.max_users


def new_tenant(company_name: str, plan: SubscriptionPlan, settings: Settings) -> Tenant:
    """Build a tenant. TRIAL plans start in TRIAL; paid plans start ACTIVE."""
    now = datetime.now(timezone.utc)
    if plan == SubscriptionPlan.TRIAL:
        status = TenantStatus.TRIAL
        trial_expires_at = now + timedelta(days=settings.tenant_trial_days)
        subscription_expires_at = None
    else:
        status = TenantStatus.ACTIVE
        trial_expires_at = None
        subscription_expires_at = now + timedelta(days=settings.tenant_subscription_days)
    return Tenant(
        id=str(uuid.uuid4()),
        company_name=company_name,
        status=status,
        subscription_plan=plan,
        max_users=plan_max_users(plan, settings),
        current_users=0,
        trial_expires_at=trial_expires_at,
        subscription_expires_at=subscription_expires_at,
        created_at=now,
        updated_at=now,
    )


def suspend(tenant: Tenant) -> Tenant:
    return replace(tenant, status=TenantStatus.SUSPENDED, updated_at=datetime.now(timezone.utc))


def activate(tenant: Tenant) -> Tenant:
    return replace(tenant, status=TenantStatus.ACTIVE, updated_at=datetime.now(timezone.utc))


def upgrade_plan(tenant: Tenant, plan: SubscriptionPlan, settings: Settings) -> Tenant:
    """Switch plan, resize the ceiling and restart the subscription period.

    Refuses a plan whose ceiling is below the tenant's current user count.
    """
    max_users = plan_max_users(plan, settings)
    if max_users < tenant.current_users:
        raise BusinessRuleError(
            f"Plan {plan.value} allows {max_users} users but the tenant has {tenant.current_users}.",
            "plan_too_small",
            details={"max_users": max_users, "current_users": tenant.current_users},
        )
    now = datetime.now(timezone.utc)
    changes = {"subscription_plan": plan, "max_users": max_users, "updated_at": now}
    if plan != SubscriptionPlan.TRIAL:
        changes["status"] = TenantStatus.ACTIVE
        changes["subscription_expires_at"] = now + timedelta(days=settings.tenant_subscription_days)
    return replace(tenant, **changes)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class TenantService:
    def __init__(self, store: IAMStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.platform_tenant_id = settings.platform_tenant_id

    def is_platform_operator(self, ctx: AuthContext) -> bool:
        """True only for admins of the configured platform tenant."""
        if not self.platform_tenant_id or ctx.tenant_id != self.platform_tenant_id:
            return False
        return scope_model.is_admin(ctx.scopes)

    def create_tenant(self, company_name: str, plan: SubscriptionPlan = SubscriptionPlan.TRIAL) -> Tenant:
        company_name = company_name.strip()
        if not company_name:
            raise ValidationError("Company name is required.", "invalid_company_name")
        tenant = new_tenant(company_name, plan, self.settings)
        self.store.create_tenant(tenant)
        logger.info("Tenant created", extra={"event": "tenant_created", "tenant_id": tenant.id})
        return tenant

    def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found.", "tenant_not_found")
        return tenant

    def list_tenants(self) -> list[Tenant]:
        return self.store.list_tenants()

    def require_active(self, tenant_id: str) -> Tenant:
        """Return the tenant, or raise if it is missing or not usable."""
        tenant = self.get_tenant(tenant_id)
        if not is_active(tenant):
            raise BusinessRuleError("Tenant is not active.", "tenant_inactive", status_code=403)
        return tenant

    def suspend_tenant(self, tenant_id: str) -> Tenant:
        tenant = suspend(self.get_tenant(tenant_id))
        self.store.update_tenant(tenant)
        logger.info("Tenant suspended", extra={"event": "tenant_suspended", "tenant_id": tenant_id})
        return tenant

    def activate_tenant(self, tenant_id: str) -> Tenant:
        tenant = activate(self.get_tenant(tenant_id))
        self.store.update_tenant(tenant)
        logger.info("Tenant activated", extra={"event": "tenant_activated", "tenant_id": tenant_id})
        return tenant

    def upgrade_plan(self, tenant_id: str, plan: SubscriptionPlan) -> Tenant:
        tenant = upgrade_plan(self.get_tenant(tenant_id), plan, self.settings)
        self.store.update_tenant(tenant)
        logger.info("Tenant plan changed to %s", plan.value, extra={"event": "tenant_plan", "tenant_id": tenant_id})
        return tenant

    def reserve_seat(self, tenant_id: str) -> None:
        """Take one user slot, or raise when the tenant is at its ceiling."""
        if not self.store.increment_user_count(tenant_id):
            raise BusinessRuleError(
                "Organization has reached maximum user limit",
                "tenant_user_limit",
                status_code=403,
            )

    def release_seat(self, tenant_id: str) -> None:
        self.store.decrement_user_count(tenant_id)

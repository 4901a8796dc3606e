"""
api/routes/v1/tenants.py -- Tenant lifecycle endpoints.

Routes:
  GET   /tenants/current               -- the caller's own tenant (any principal)
  GET   /tenants                       -- all tenants (platform operator)
  POST  /tenants                       -- create tenant (platform operator)
  GET   /tenants/{tenant_id}           -- tenant detail (platform operator, or own tenant with tenants:read)
  POST  /tenants/{tenant_id}/suspend   -- ACTIVE -> SUSPENDED (platform operator)
  POST  /tenants/{tenant_id}/activate  -- -> ACTIVE (platform operator)
  PATCH /tenants/{tenant_id}/plan      -- change plan; refuses plans below current usage (platform operator)

A platform operator is an admin ("*" or "admin:*") of the tenant named by
PLATFORM_TENANT_ID. A bootstrapped tenant's super_admin also holds "*", but
only inside its own tenant: another tenant's id answers 404 and the
platform-wide routes answer 403.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import TenantCreate, TenantPlanUpdate, TenantResponse
from iam.dependencies import get_auth_context
from iam.errors import NotFoundError
from iam.models import AuthContext
from iam.scopes import has_scope
from iam.tenants import TenantService

router = APIRouter(prefix="/tenants")


def _service(request: Request) -> TenantService:
    return request.app.state.tenants


def _require_operator(request: Request, ctx: AuthContext, tenant_id: str | None = None) -> None:
    if _service(request).is_platform_operator(ctx):
        return
    if tenant_id is not None and tenant_id != ctx.tenant_id:
        raise NotFoundError("Tenant not found.", "tenant_not_found")
    raise HTTPException(
        status_code=403,
        detail={"code": "forbidden", "message": "Platform operator access required"},
    )


@router.get("/current", response_model=TenantResponse)
def current_tenant(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> TenantResponse:
    return TenantResponse.from_domain(_service(request).get_tenant(ctx.tenant_id))


@router.get("", response_model=list[TenantResponse])
def list_tenants(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> list[TenantResponse]:
    _require_operator(request, ctx)
    return [TenantResponse.from_domain(t) for t in _service(request).list_tenants()]


@router.post("", response_model=TenantResponse, status_code=201)
def create_tenant(
    request: Request,
    body: TenantCreate,
    ctx: AuthContext = Depends(get_auth_context),
) -> TenantResponse:
    _require_operator(request, ctx)
    return TenantResponse.from_domain(_service(request).create_tenant(body.company_name, body.subscription_plan))


@router.get("/{tenant_id}", response_model=TenantResponse)
def get_tenant(request: Request, tenant_id: str, ctx: AuthContext = Depends(get_auth_context)) -> TenantResponse:
    """Operators see any tenant; others only their own, with tenants:read."""
    own = tenant_id == ctx.tenant_id and has_scope(ctx.scopes, "tenants:read")
    if not (own or _service(request).is_platform_operator(ctx)):
        raise NotFoundError("Tenant not found.", "tenant_not_found")
    return TenantResponse.from_domain(_service(request).get_tenant(tenant_id))


@router.post("/{tenant_id}/suspend", response_model=TenantResponse)
def suspend_tenant(request: Request, tenant_id: str, ctx: AuthContext = Depends(get_auth_context)) -> TenantResponse:
    _require_operator(request, ctx, tenant_id)
    return TenantResponse.from_domain(_service(request).suspend_tenant(tenant_id))


@router.post("/{tenant_id}/activate", response_model=TenantResponse)
def activate_tenant(request: Request, tenant_id: str, ctx: AuthContext = Depends(get_auth_context)) -> TenantResponse:
    _require_operator(request, ctx, tenant_id)
    return TenantResponse.from_domain(_service(request).activate_tenant(tenant_id))


@router.patch("/{tenant_id}/plan", response_model=TenantResponse)
def change_plan(
    request: Request,
    tenant_id: str,
    body: TenantPlanUpdate,
    ctx: AuthContext = Depends(get_auth_context),
) -> TenantResponse:
    _require_operator(request, ctx, tenant_id)
    return TenantResponse.from_domain(_service(request).upgrade_plan(tenant_id, body.subscription_plan))

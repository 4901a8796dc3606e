"""
api/routes/v1/api_keys.py -- Tenant API key management.

Routes (all tenant-scoped to the caller's tenant):
  POST   /api-keys                 -- create key; full key returned ONCE (api_keys:write)
  GET    /api-keys                 -- list key metadata (api_keys:read)
  GET    /api-keys/{key_id}        -- key metadata (api_keys:read)
  PATCH  /api-keys/{key_id}        -- rename, rescope, enable/disable (api_keys:write)
  POST   /api-keys/{key_id}/revoke -- deactivate (api_keys:revoke)
  DELETE /api-keys/{key_id}        -- delete (api_keys:delete)

Security:
  A caller cannot grant a key scopes it does not hold itself.
  A key in another tenant is reported as 404, never 403.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyResponse, ApiKeyUpdate
from iam.apikeys import ApiKeyService
from iam.dependencies import require_admin_or_scope
from iam.models import AuthContext
from iam.scopes import has_scope

router = APIRouter(prefix="/api-keys")


def _service(request: Request) -> ApiKeyService:
    return request.app.state.api_keys


def _check_grantable(ctx: AuthContext, scopes: list[str]) -> None:
    """Reject scopes the caller could not exercise itself."""
    excess = [s for s in scopes if not has_scope(ctx.scopes, s)]
    if excess:
        raise HTTPException(
            status_code=403,
            detail={
                "code": "scope_escalation",
                "message": "Cannot grant scopes you do not hold.",
                "detail": {"scopes": excess},
            },
        )


@router.post("", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    response: Response,
    body: ApiKeyCreate,
    ctx: AuthContext = Depends(require_admin_or_scope("api_keys:write")),
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown once and only its hash is stored."""
    _check_grantable(ctx, body.scopes)
    created = _service(request).create_api_key(
        ctx.tenant_id,
        body.name,
        body.scopes,
        user_id=ctx.user_id,
        description=body.description,
        expires_at=body.expires_at,
        environment=body.environment,
    )
    response.headers["Cache-Control"] = "no-store"
    return ApiKeyCreatedResponse.from_created(created)


@router.get("", response_model=list[ApiKeyResponse])
def list_api_keys(
    request: Request,
    ctx: AuthContext = Depends(require_admin_or_scope("api_keys:read")),
) -> list[ApiKeyResponse]:
    return [ApiKeyResponse.from_domain(k) for k in _service(request).list_api_keys(ctx.tenant_id)]


@router.get("/{key_id}", response_model=ApiKeyResponse)
def get_api_key(
    request: Request,
    key_id: str,
    ctx: AuthContext = Depends(require_admin_or_scope("api_keys:read")),
) -> ApiKeyResponse:
    return ApiKeyResponse.from_domain(_service(request).get_api_key(key_id, ctx.tenant_id))


@router.patch("/{key_id}", response_model=ApiKeyResponse)
def update_api_key(
    request: Request,
    key_id: str,
    body: ApiKeyUpdate,
    ctx: AuthContext = Depends(require_admin_or_scope("api_keys:write")),
) -> ApiKeyResponse:
    if body.scopes is not None:
        _check_grantable(ctx, body.scopes)
    updated = _service(request).update_api_key(
        key_id,
        ctx.tenant_id,
        name=body.name,
        description=body.description,
        scopes=body.scopes,
        is_active=body.is_active,
    )
    return ApiKeyResponse.from_domain(updated)


@router.post("/{key_id}/revoke", response_model=ApiKeyResponse)
def revoke_api_key(
    request: Request,
    key_id: str,
    ctx: AuthContext = Depends(require_admin_or_scope("api_keys:revoke")),
) -> ApiKeyResponse:
    return ApiKeyResponse.from_domain(_service(request).revoke_api_key(key_id, ctx.tenant_id))


@router.delete("/{key_id}", status_code=204)
def delete_api_key(
    request: Request,
    key_id: str,
    ctx: AuthContext = Depends(require_admin_or_scope("api_keys:delete")),
) -> Response:
    _service(request).delete_api_key(key_id, ctx.tenant_id)
    return Response(status_code=204)

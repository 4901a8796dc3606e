"""
api/routes/v1/users.py -- Tenant user administration.

Routes (tenant-scoped to the caller's tenant):
  GET   /users                     -- list users (users:read)
  POST  /users                     -- create an ACTIVE OTP user directly (users:write)
  GET   /users/{user_id}           -- user detail (users:read)
  PATCH /users/{user_id}/scopes    -- replace scopes (roles:assign)
  POST  /users/{user_id}/activate  -- PENDING -> ACTIVE (users:write)
  POST  /users/{user_id}/suspend   -- ACTIVE -> SUSPENDED; revokes sessions (users:write)

Security:
  [M4] A caller cannot suspend itself.
  A caller cannot grant scopes it does not hold.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import UserCreate, UserResponse, UserScopesUpdate
from iam.dependencies import require_admin_or_scope
from iam.models import AuthContext
from iam.scopes import has_scope
from iam.users import UserService

router = APIRouter(prefix="/users")


def _service(request: Request) -> UserService:
    return request.app.state.users


@router.get("", response_model=list[UserResponse])
def list_users(
    request: Request,
    ctx: AuthContext = Depends(require_admin_or_scope("users:read")),
) -> list[UserResponse]:
    return [UserResponse.from_domain(u) for u in _service(request).list_users(ctx.tenant_id)]


@router.post("", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    ctx: AuthContext = Depends(require_admin_or_scope("users:write")),
) -> UserResponse:
    user = _service(request).create_user(
        ctx.tenant_id,
        body.email,
        body.name,
        scopes=body.scopes,
        template=body.template,
    )
    return UserResponse.from_domain(user)


@router.get("/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: str,
    ctx: AuthContext = Depends(require_admin_or_scope("users:read")),
) -> UserResponse:
    return UserResponse.from_domain(_service(request).get_user(user_id, ctx.tenant_id))


@router.patch("/{user_id}/scopes", response_model=UserResponse)
def set_user_scopes(
    request: Request,
    user_id: str,
    body: UserScopesUpdate,
    ctx: AuthContext = Depends(require_admin_or_scope("roles:assign")),
) -> UserResponse:
    """Replace a user's scopes. Takes effect on the user's next token."""
    excess = [s for s in body.scopes if not has_scope(ctx.scopes, s)]
    if excess:
        raise HTTPException(
            status_code=403,
            detail={
                "code": "scope_escalation",
                "message": "Cannot grant scopes you do not hold.",
                "detail": {"scopes": excess},
            },
        )
    return UserResponse.from_domain(_service(request).set_scopes(user_id, body.scopes, ctx.tenant_id))


@router.post("/{user_id}/activate", response_model=UserResponse)
def activate_user(
    request: Request,
    user_id: str,
    ctx: AuthContext = Depends(require_admin_or_scope("users:write")),
) -> UserResponse:
    return UserResponse.from_domain(_service(request).activate_user(user_id, ctx.tenant_id))


@router.post("/{user_id}/suspend", response_model=UserResponse)
def suspend_user(
    request: Request,
    user_id: str,
    ctx: AuthContext = Depends(require_admin_or_scope("users:write")),
) -> UserResponse:
    if user_id == ctx.user_id:  # [M4]
        raise HTTPException(
            status_code=400,
            detail={"code": "self_suspension", "message": "You cannot suspend your own account."},
        )
    return UserResponse.from_domain(_service(request).suspend_user(user_id, ctx.tenant_id))

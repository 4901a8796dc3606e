"""
api/routes/v1/invitations.py -- Invitation management and public token checks.

Routes (in registration order to avoid FastAPI path capture conflicts):
  POST   /invitations                   -- invite an email (users:invite)
  GET    /invitations                   -- all invitations (users:read)
  GET    /invitations/pending           -- pending only (users:read)
  GET    /invitations/templates         -- scope group names usable as templates
  GET    /invitations/token/{token}     -- public: invitation state by token
  POST   /invitations/validate          -- public: success-shaped validity check
  GET    /invitations/{invitation_id}   -- detail (users:read)
  POST   /invitations/{invitation_id}/revoke -- revoke (users:invite)
  DELETE /invitations/{invitation_id}   -- delete unaccepted (users:invite)

The token is returned only by POST /invitations. Listings never include it.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.limiter import limiter
from api.models import (
    InvitationCreate,
    InvitationCreatedResponse,
    InvitationResponse,
    InvitationValidateRequest,
    InvitationValidationResponse,
)
from core.config import get_settings
from iam.dependencies import get_auth_context, require_admin_or_scope
from iam.invitations import InvitationService
from iam.models import AuthContext

_settings = get_settings()

router = APIRouter(prefix="/invitations")


def _service(request: Request) -> InvitationService:
    return request.app.state.invitations


@router.post("", response_model=InvitationCreatedResponse, status_code=201)
def create_invitation(
    request: Request,
    body: InvitationCreate,
    ctx: AuthContext = Depends(require_admin_or_scope("users:invite")),
) -> InvitationCreatedResponse:
    """Invite an email into the caller's tenant. Returns the one-time token."""
    if ctx.user_id is None:
        raise HTTPException(
            status_code=403,
            detail={"code": "user_required", "message": "Invitations must be sent by a user."},
        )
    invitation = _service(request).create_invitation(
        ctx.tenant_id,
        body.email,
        ctx.user_id,
        scopes=body.scopes,
        template=body.template,
    )
    return InvitationCreatedResponse.from_invitation(invitation)


@router.get("", response_model=list[InvitationResponse])
def list_invitations(
    request: Request,
    ctx: AuthContext = Depends(require_admin_or_scope("users:read")),
) -> list[InvitationResponse]:
    return [InvitationResponse.from_domain(i) for i in _service(request).list_invitations(ctx.tenant_id)]


@router.get("/pending", response_model=list[InvitationResponse])
def list_pending_invitations(
    request: Request,
    ctx: AuthContext = Depends(require_admin_or_scope("users:read")),
) -> list[InvitationResponse]:
    return [InvitationResponse.from_domain(i) for i in _service(request).list_pending(ctx.tenant_id)]


@router.get("/templates", response_model=list[str])
def list_templates(ctx: AuthContext = Depends(get_auth_context)) -> list[str]:
    return InvitationService.available_templates()


# ---------------------------------------------------------------------------
# Public token endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)
@router.get("/token/{token}", response_model=InvitationValidationResponse)
def get_invitation_by_token(request: Request, token: str) -> InvitationValidationResponse:
    """Look up an invitation by token. 404 when no invitation has this token."""
    _service(request).get_by_token(token)
    return InvitationValidationResponse.from_validation(_service(request).validate_token(token))


@limiter.limit(_settings.otp_rate_limit)
@router.post("/validate", response_model=InvitationValidationResponse)
def validate_invitation(request: Request, body: InvitationValidateRequest) -> InvitationValidationResponse:
    """Always 200; `valid` and `message` say whether the token can be used."""
    return InvitationValidationResponse.from_validation(_service(request).validate_token(body.token))


# ---------------------------------------------------------------------------
# Single invitation
# ---------------------------------------------------------------------------


@router.get("/{invitation_id}", response_model=InvitationResponse)
def get_invitation(
    request: Request,
    invitation_id: str,
    ctx: AuthContext = Depends(require_admin_or_scope("users:read")),
) -> InvitationResponse:
    return InvitationResponse.from_domain(_service(request).get_invitation(invitation_id, ctx.tenant_id))


@router.post("/{invitation_id}/revoke", response_model=InvitationResponse)
def revoke_invitation(
    request: Request,
    invitation_id: str,
    ctx: AuthContext = Depends(require_admin_or_scope("users:invite")),
) -> InvitationResponse:
    return InvitationResponse.from_domain(_service(request).revoke_invitation(invitation_id, ctx.tenant_id))


@router.delete("/{invitation_id}", status_code=204)
def delete_invitation(
    request: Request,
    invitation_id: str,
    ctx: AuthContext = Depends(require_admin_or_scope("users:invite")),
) -> Response:
    _service(request).delete_invitation(invitation_id, ctx.tenant_id)
    return Response(status_code=204)

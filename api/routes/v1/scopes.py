"""
api/routes/v1/scopes.py -- Read-only scope registry.

Routes (any authenticated principal):
  GET /scopes                 -- every registered scope with category + description
  GET /scopes/categories      -- category -> scope names
  GET /scopes/groups          -- every named group and its scopes
  GET /scopes/groups/{name}   -- one group
  GET /scopes/me              -- the caller's own granted scopes
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from api.models import ScopeGroup, ScopeInfo
from iam import scopes as scope_model
from iam.dependencies import get_auth_context
from iam.models import AuthContext

router = APIRouter(prefix="/scopes", dependencies=[Depends(get_auth_context)])


@router.get("", response_model=list[ScopeInfo])
def list_scopes() -> list[ScopeInfo]:
    return [
        ScopeInfo(
            scope=scope,
            category=scope_model.get_scope_category(scope),
            description=scope_model.get_scope_description(scope),
        )
        for scope in scope_model.get_all_scopes()
    ]


@router.get("/categories", response_model=dict[str, list[str]])
def list_categories() -> dict[str, list[str]]:
    return scope_model.get_categories()


@router.get("/groups", response_model=list[ScopeGroup])
def list_groups() -> list[ScopeGroup]:
    return [ScopeGroup(name=g, scopes=scope_model.get_scopes_by_group(g)) for g in scope_model.get_available_groups()]


@router.get("/groups/{name}", response_model=ScopeGroup)
def get_group(name: str) -> ScopeGroup:
    if not scope_model.is_known_group(name):
        raise HTTPException(
            status_code=404,
            detail={"code": "group_not_found", "message": f"Unknown scope group '{name}'."},
        )
    return ScopeGroup(name=name, scopes=scope_model.get_scopes_by_group(name))


@router.get("/me", response_model=list[str])
def my_scopes(ctx: AuthContext = Depends(get_auth_context)) -> list[str]:
    return list(ctx.scopes)

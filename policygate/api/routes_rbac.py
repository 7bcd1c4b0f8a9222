# RBAC Admin API - Effective policy map inspection and role/user-role management
# Main functions: show_policies(), effective_policies(), attach_user_role(), detach_user_role()
# Flow: route declaration -> require() enforcement -> policy map / role store -> JSON with fingerprint

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from sqlmodel import Session

from policygate.api.deps import get_services, get_session, require
from policygate.core.container import RbacServices
from policygate.core.policy_map import PolicySnapshot
from policygate.core.sources import POLICY_DEFINITIONS, RouteDeclaration
from policygate.core.user_roles import attach_role, create_role, detach_role, list_roles, role_names_for_user
from policygate.models.principal import Principal


router = APIRouter(prefix="/rbac", tags=["rbac"])


ROUTE_DECLARATIONS = [
    RouteDeclaration(route_id="rbac.policies.show", method="GET", path="/rbac/policies", policy="core.rbac.view", require_auth=True),
    RouteDeclaration(
        route_id="rbac.policies.effective",
        method="GET",
        path="/rbac/policies/effective",
        policy="core.rbac.view",
        require_auth=True,
    ),
    RouteDeclaration(
        route_id="rbac.policies.cache.clear",
        method="POST",
        path="/rbac/policies/cache/clear",
        policy="core.settings.manage",
        require_auth=True,
    ),
    RouteDeclaration(route_id="rbac.roles.index", method="GET", path="/rbac/roles", policy="core.rbac.view", require_auth=True),
    RouteDeclaration(route_id="rbac.roles.store", method="POST", path="/rbac/roles", policy="rbac.roles.manage", require_auth=True),
    RouteDeclaration(
        route_id="rbac.user_roles.show",
        method="GET",
        path="/rbac/users/{user_id}/roles",
        policy="rbac.user_roles.manage",
        require_auth=True,
    ),
    RouteDeclaration(
        route_id="rbac.user_roles.attach",
        method="POST",
        path="/rbac/users/{user_id}/roles/{role}",
        policy="rbac.user_roles.manage",
        require_auth=True,
    ),
    RouteDeclaration(
        route_id="rbac.user_roles.detach",
        method="DELETE",
        path="/rbac/users/{user_id}/roles/{role}",
        policy="rbac.user_roles.manage",
        require_auth=True,
    ),
]


class RoleCreateRequest(BaseModel):
    name: str


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def _catalog_view(snapshot: PolicySnapshot, generated_at: str) -> Dict[str, Any]:
    return {
        "data": {
            "policies": snapshot.effective,
            "catalog": {"policies": snapshot.policies, "roles": snapshot.roles},
        },
        "meta": {
            "mode": snapshot.mode,
            "persistence": snapshot.persistence,
            "counts": snapshot.counts,
            "catalog": {"policies": snapshot.policies, "roles": snapshot.roles},
            "fingerprint": snapshot.fingerprint,
            "generated_at": generated_at,
        },
    }


@router.get("/policies")
def show_policies(
    services: RbacServices = Depends(get_services),
    _: Optional[Principal] = Depends(require("rbac.policies.show")),
):
    snapshot = services.policy_map.snapshot()
    generated_at = _now_iso()
    body = {
        "ok": True,
        "mode": snapshot.mode,
        "persistence": snapshot.persistence,
        "defaults": snapshot.defaults,
        "overrides": snapshot.overrides,
        "effective": snapshot.effective,
        "definitions": {key: POLICY_DEFINITIONS.get(key) for key in snapshot.policies},
        **_catalog_view(snapshot, generated_at),
        "generated_at": generated_at,
    }
    return JSONResponse(body, headers={"ETag": f'"{snapshot.fingerprint}"'})


@router.get("/policies/effective")
def effective_policies(
    request: Request,
    services: RbacServices = Depends(get_services),
    _: Optional[Principal] = Depends(require("rbac.policies.effective")),
):
    snapshot = services.policy_map.snapshot()
    etag = f'"{snapshot.fingerprint}"'
    if request.headers.get("If-None-Match") == etag:
        return Response(status_code=304, headers={"ETag": etag})
    generated_at = _now_iso()
    body = {"ok": True, **_catalog_view(snapshot, generated_at), "generated_at": generated_at}
    return JSONResponse(body, headers={"ETag": etag})


@router.post("/policies/cache/clear")
def clear_policy_cache(
    services: RbacServices = Depends(get_services),
    _: Optional[Principal] = Depends(require("rbac.policies.cache.clear")),
):
    services.policy_map.clear_cache()
    return {"ok": True, "fingerprint": services.policy_map.fingerprint()}


@router.get("/roles")
def index_roles(
    session: Session = Depends(get_session),
    services: RbacServices = Depends(get_services),
    _: Optional[Principal] = Depends(require("rbac.roles.index")),
):
    roles = [{"id": row.id, "name": row.name} for row in list_roles(session)]
    return {"ok": True, "roles": roles, "known": services.policy_map.known_roles()}


@router.post("/roles")
def store_role(
    payload: RoleCreateRequest,
    session: Session = Depends(get_session),
    services: RbacServices = Depends(get_services),
    principal: Optional[Principal] = Depends(require("rbac.roles.store")),
):
    role = create_role(session, payload.name, services.audit_sink, actor_id=principal.sub if principal else None)
    return JSONResponse(status_code=201, content={"ok": True, "role": {"id": role.id, "name": role.name}})


@router.get("/users/{user_id}/roles")
def show_user_roles(
    user_id: str,
    session: Session = Depends(get_session),
    _: Optional[Principal] = Depends(require("rbac.user_roles.show")),
):
    return {"ok": True, "user_id": user_id, "roles": role_names_for_user(session, user_id)}


@router.post("/users/{user_id}/roles/{role}")
def attach_user_role(
    user_id: str,
    role: str,
    session: Session = Depends(get_session),
    services: RbacServices = Depends(get_services),
    principal: Optional[Principal] = Depends(require("rbac.user_roles.attach")),
):
    roles = attach_role(session, user_id, role, services.audit_sink, actor_id=principal.sub if principal else None)
    return {"ok": True, "user_id": user_id, "roles": roles}


@router.delete("/users/{user_id}/roles/{role}")
def detach_user_role(
    user_id: str,
    role: str,
    session: Session = Depends(get_session),
    services: RbacServices = Depends(get_services),
    principal: Optional[Principal] = Depends(require("rbac.user_roles.detach")),
):
    roles = detach_role(session, user_id, role, services.audit_sink, actor_id=principal.sub if principal else None)
    return {"ok": True, "user_id": user_id, "roles": roles}

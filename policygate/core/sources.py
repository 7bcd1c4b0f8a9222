# Policy Sources - The three inputs merged into the effective policy map
# Main pieces: BASELINE_POLICIES, RouteDeclaration/RouteRegistry, PolicySources.collect()
# Flow: baseline + config defaults -> config overrides -> route-declared hints

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from policygate.core.config import RbacConfig
from policygate.core.merge import merge_all, merge_policies
from policygate.core.normalize import PolicyRoleMap, normalize_policy_map


BASELINE_POLICIES: Dict[str, List[str]] = {
    "core.settings.manage": ["admin"],
    "core.audit.view": ["admin", "auditor"],
    "core.audit.export": ["admin"],
    "core.metrics.view": ["admin"],
    "core.users.view": ["admin"],
    "core.users.manage": ["admin"],
    "core.evidence.view": ["admin", "auditor"],
    "core.evidence.manage": ["admin"],
    "core.exports.generate": ["admin"],
    "core.rbac.view": ["admin"],
    "rbac.roles.manage": ["admin"],
    "rbac.user_roles.manage": ["admin"],
}


POLICY_DEFINITIONS: Dict[str, Dict[str, str]] = {
    "core.settings.manage": {
        "label": "Manage core settings",
        "description": "Allows administrators to update global configuration values.",
    },
    "core.audit.view": {"label": "View audit events", "description": "Grants read-only access to the audit log."},
    "core.audit.export": {"label": "Export audit events", "description": "Allows exporting audit logs to CSV."},
    "core.metrics.view": {
        "label": "View metrics",
        "description": "Authorizes access to KPI dashboards and metrics APIs.",
    },
    "core.users.view": {"label": "View users", "description": "Permits listing users and viewing user details."},
    "core.users.manage": {"label": "Manage users", "description": "Allows creating, updating, and deleting users."},
    "core.evidence.view": {
        "label": "View evidence",
        "description": "Grants read-only access to uploaded evidence artifacts.",
    },
    "core.evidence.manage": {
        "label": "Manage evidence",
        "description": "Allows uploading, updating, and deleting evidence.",
    },
    "core.exports.generate": {"label": "Generate exports", "description": "Authorizes launching data export jobs."},
    "core.rbac.view": {
        "label": "View RBAC policies",
        "description": "Allows inspection of role/policy assignments.",
    },
    "rbac.roles.manage": {"label": "Manage roles", "description": "Allows creating, renaming, and deleting roles."},
    "rbac.user_roles.manage": {"label": "Manage user roles", "description": "Allows assigning roles to users."},
}


class RouteDeclaration(BaseModel):
    """Access requirements declared for one route when it is registered."""

    route_id: str
    method: str = "GET"
    path: str = ""
    policy: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    capability: Optional[str] = None
    require_auth: Optional[bool] = None

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("policy", "capability", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str) or not value.strip():
            return None
        return value

    @field_validator("roles", mode="before")
    @classmethod
    def accept_single_role(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            return [value]
        if not isinstance(value, (list, tuple)):
            return []
        return [item for item in value if isinstance(item, str)]


class RouteRegistry:
    """Statically declared route table, filled at registration time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._routes: Dict[str, RouteDeclaration] = {}

    def register(self, declaration: RouteDeclaration) -> RouteDeclaration:
        with self._lock:
            self._routes[declaration.route_id] = declaration
        return declaration

    def declare(self, route_id: str, **fields: Any) -> RouteDeclaration:
        return self.register(RouteDeclaration(route_id=route_id, **fields))

    def get(self, route_id: str) -> Optional[RouteDeclaration]:
        return self._routes.get(route_id)

    def routes(self) -> List[RouteDeclaration]:
        with self._lock:
            return list(self._routes.values())

    def policy_hints(self) -> PolicyRoleMap:
        """Fold route declarations into a policy map; a policy with no roles still yields a key."""
        hints: Dict[str, List[str]] = {}
        for route in self.routes():
            if route.policy is None:
                continue
            hints.setdefault(route.policy, []).extend(route.roles)
        return normalize_policy_map(hints)


@dataclass(frozen=True)
class PolicySources:
    baseline: PolicyRoleMap
    defaults: PolicyRoleMap
    overrides: PolicyRoleMap
    routes: PolicyRoleMap

    @classmethod
    def collect(cls, config: RbacConfig, registry: Optional[RouteRegistry] = None) -> "PolicySources":
        return cls(
            baseline=normalize_policy_map(BASELINE_POLICIES),
            defaults=normalize_policy_map(config.policies.defaults),
            overrides=normalize_policy_map(config.policies.overrides),
            routes=registry.policy_hints() if registry is not None else {},
        )

    def configured_defaults(self) -> PolicyRoleMap:
        return merge_policies(self.baseline, self.defaults)

    def merged(self) -> PolicyRoleMap:
        return merge_all(self.baseline, self.defaults, self.overrides, self.routes)

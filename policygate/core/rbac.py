# RBAC Enforcement - Per-request allow/deny decisions over the effective policy map
# Main functions: RbacEnforcer.decide() returns Decision, enforce() raises RbacDenied
# Flow: capability flag -> authentication (anonymous allowed unless required) -> required roles -> policy roles (persist only) -> allow

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from structlog import get_logger

from policygate.core.config import RbacConfigSource
from policygate.core.errors import RbacDenied
from policygate.core.metrics import RbacMetrics
from policygate.core.normalize import normalize_roles
from policygate.core.policy_map import PolicyMapService
from policygate.core.security import correlation_id
from policygate.core.sources import RouteDeclaration
from policygate.models.principal import Principal
from policygate.utils.audit_logger import AuditSink, deliver


logger = get_logger(__name__)


class DenyReason(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    ROLE_MISMATCH = "role_mismatch"
    POLICY = "policy"
    CAPABILITY = "capability"


@dataclass
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: DenyReason, meta: Dict[str, Any]) -> "Decision":
        return cls(False, reason=reason, meta=meta)


@dataclass
class RequestContext:
    route: RouteDeclaration
    principal: Optional[Principal] = None
    request_id: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None


class RbacEnforcer:
    def __init__(
        self,
        policy_map: PolicyMapService,
        config_source: RbacConfigSource,
        audit_sink: Optional[AuditSink] = None,
        metrics: Optional[RbacMetrics] = None,
    ):
        self.policy_map = policy_map
        self.config_source = config_source
        self.audit_sink = audit_sink
        self.metrics = metrics if metrics is not None else RbacMetrics()
        self.metrics.observe_policy_map(policy_map)

    def decide(self, context: RequestContext) -> Decision:
        config = self.config_source.current()
        if not config.enabled:
            self._count("allow")
            return Decision.allow()

        route = context.route
        principal = context.principal
        required_roles = normalize_roles(route.roles)
        require_auth = config.require_auth if route.require_auth is None else route.require_auth

        if route.capability is not None and not config.capability_enabled(route.capability):
            return self._deny(DenyReason.CAPABILITY, context, required_roles)

        if principal is None:
            if require_auth:
                return self._deny(DenyReason.UNAUTHENTICATED, context, required_roles)
            self._count("allow")
            return Decision.allow()

        held = set(principal.roles)

        if required_roles and not held.intersection(required_roles):
            return self._deny(DenyReason.ROLE_MISMATCH, context, required_roles)

        # Stub mode: policy checks are permissive.
        if route.policy is not None and config.persistence_enabled:
            permitted = self.policy_map.roles_for_policy(route.policy)
            if permitted is None or not held.intersection(permitted):
                return self._deny(DenyReason.POLICY, context, required_roles, permitted_roles=permitted)

        self._count("allow")
        return Decision.allow()

    def enforce(self, context: RequestContext) -> Decision:
        decision = self.decide(context)
        if not decision.allowed:
            raise RbacDenied(decision, route_id=context.route.route_id)
        return decision

    def decision_counts(self) -> Dict[str, int]:
        return self.metrics.decision_counts()

    def _count(self, outcome: str) -> None:
        self.metrics.record_decision(outcome)

    def _deny(
        self,
        reason: DenyReason,
        context: RequestContext,
        required_roles: List[str],
        permitted_roles: Optional[List[str]] = None,
    ) -> Decision:
        route = context.route
        principal = context.principal
        request_id = context.request_id or correlation_id()
        meta: Dict[str, Any] = {
            "reason": reason.value,
            "policy": route.policy,
            "capability": route.capability,
            "required_roles": required_roles or None,
            "roles_user": list(principal.roles) if principal is not None else None,
            "rbac_mode": self.config_source.current().mode.value,
            "route": context.path or route.path or None,
            "method": context.method or route.method,
            "request_id": request_id,
        }
        if reason is DenyReason.POLICY:
            meta["policy_roles"] = permitted_roles
        meta = {key: value for key, value in meta.items() if value is not None}

        self._count(f"deny.{reason.value}")
        logger.info("rbac.deny", route_id=route.route_id, reason=reason.value, request_id=request_id)
        deliver(
            self.audit_sink,
            {
                "action": f"rbac.deny.{reason.value}",
                "category": "RBAC",
                "entity_type": "route",
                "entity_id": route.route_id,
                "actor_id": principal.sub if principal is not None else None,
                "corr_id": request_id,
                "meta": meta,
            },
        )
        return Decision.deny(reason, meta)

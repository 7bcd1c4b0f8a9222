from __future__ import annotations

import threading
from typing import Callable, Iterable, Optional, Set

from structlog import get_logger

from policygate.core.normalize import normalize_roles
from policygate.utils.audit_logger import AuditSink, deliver


logger = get_logger(__name__)

UNKNOWN_ROLE_ACTION = "policy.override.unknown_role"


class UnknownRoleAuditor:
    """Emits one unknown-role audit per policy key for the lifetime of this object.

    The dedup set lives here rather than in the policy map cache, so clearing or
    invalidating the cache never replays an audit. One instance per process gives
    "once per boot"; separate worker processes each keep their own set.
    """

    def __init__(self, sink: Optional[AuditSink], persistence_enabled: Callable[[], bool]):
        self._sink = sink
        self._persistence_enabled = persistence_enabled
        self._lock = threading.Lock()
        self._audited: Set[str] = set()

    def report_unknown(self, policy_key: str, unknown_roles: Iterable[str]) -> bool:
        """Return True when an audit event was emitted for this call."""
        tokens = normalize_roles(list(unknown_roles))
        if not tokens or not policy_key:
            return False
        if not self._persistence_enabled():
            return False

        with self._lock:
            if policy_key in self._audited:
                return False
            self._audited.add(policy_key)

        logger.info("rbac.unknown_role", policy=policy_key, unknown_roles=tokens)
        deliver(
            self._sink,
            {
                "action": UNKNOWN_ROLE_ACTION,
                "category": "RBAC",
                "entity_type": "rbac.policy",
                "entity_id": policy_key,
                "actor_id": None,
                "meta": {"policy": policy_key, "unknown_roles": tokens},
            },
        )
        return True

    def audited_policies(self) -> Set[str]:
        with self._lock:
            return set(self._audited)

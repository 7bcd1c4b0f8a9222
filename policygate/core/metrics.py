# RBAC Metrics - Prometheus collectors for enforcement decisions and policy map state
# Main pieces: RbacMetrics (own CollectorRegistry), observe_policy_map(), render()

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Optional, Tuple

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

if TYPE_CHECKING:
    from policygate.core.policy_map import PolicyMapService


class RbacMetrics:
    """Collectors live in a per-instance registry so every service graph counts on its own."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self.decisions_total = Counter(
            "policygate_decisions_total",
            "RBAC decisions by outcome (allow or deny.<reason>)",
            ["outcome"],
            registry=self.registry,
        )
        self.policy_map_recomputes = Gauge(
            "policygate_policy_map_recomputes",
            "Times the effective policy map was recomputed",
            registry=self.registry,
        )
        self.unknown_role_policies = Gauge(
            "policygate_unknown_role_policies",
            "Policies that have reported unknown roles",
            registry=self.registry,
        )

    def observe_policy_map(self, policy_map: "PolicyMapService") -> None:
        self.policy_map_recomputes.set_function(lambda: policy_map.recompute_count)
        self.unknown_role_policies.set_function(lambda: len(policy_map.auditor.audited_policies()))

    def record_decision(self, outcome: str) -> None:
        self.decisions_total.labels(outcome=outcome).inc()

    def decision_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for metric in self.decisions_total.collect():
            for sample in metric.samples:
                if sample.name.endswith("_total"):
                    counts[sample.labels["outcome"]] = int(sample.value)
        return counts

    def render(self) -> Tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST

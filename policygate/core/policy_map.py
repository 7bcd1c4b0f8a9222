# Effective Policy Map - Merged, catalog-filtered policy->roles map behind a fingerprint cache
# Main class: PolicyMapService (effective, roles_for_policy, role_catalog, policy_keys, clear_cache)
# Flow: collect sources -> merge -> snapshot catalog -> fingerprint -> [cache hit | filter + audit unknown]

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from structlog import get_logger

from policygate.core.auditor import UnknownRoleAuditor
from policygate.core.catalog import RoleCatalogProvider, snapshot_catalog
from policygate.core.config import RbacConfig, RbacConfigSource
from policygate.core.fingerprint import compute_fingerprint
from policygate.core.normalize import PolicyRoleMap
from policygate.core.sources import PolicySources, RouteRegistry


logger = get_logger(__name__)


@dataclass(frozen=True)
class _CacheEntry:
    fingerprint: str
    config: RbacConfig
    sources: PolicySources
    catalog: FrozenSet[str]
    effective: Tuple[Tuple[str, Tuple[str, ...]], ...]

    def as_map(self) -> PolicyRoleMap:
        return {key: list(roles) for key, roles in self.effective}


@dataclass
class PolicySnapshot:
    mode: str
    persistence: bool
    defaults: PolicyRoleMap
    overrides: PolicyRoleMap
    effective: PolicyRoleMap
    policies: List[str]
    roles: List[str]
    known_roles: List[str]
    fingerprint: str
    counts: Dict[str, int] = field(default_factory=dict)


class PolicyMapService:
    def __init__(
        self,
        config_source: RbacConfigSource,
        catalog: RoleCatalogProvider,
        registry: Optional[RouteRegistry] = None,
        auditor: Optional[UnknownRoleAuditor] = None,
    ):
        self.config_source = config_source
        self.catalog = catalog
        self.registry = registry if registry is not None else RouteRegistry()
        self.auditor = auditor or UnknownRoleAuditor(None, lambda: config_source.current().persistence_enabled)
        self.recompute_count = 0
        self._lock = threading.Lock()
        self._entry: Optional[_CacheEntry] = None

    def _resolve(self) -> _CacheEntry:
        config = self.config_source.current()
        sources = PolicySources.collect(config, self.registry)
        merged = sources.merged()
        catalog = frozenset(snapshot_catalog(self.catalog))
        fingerprint = compute_fingerprint(config.mode.value, config.persistence, merged, catalog)

        entry = self._entry
        if entry is not None and entry.fingerprint == fingerprint:
            return entry

        with self._lock:
            entry = self._entry
            if entry is not None and entry.fingerprint == fingerprint:
                return entry
            entry = self._recompute(fingerprint, config, sources, merged, catalog)
            self._entry = entry
            self.recompute_count += 1
        return entry

    def _recompute(
        self,
        fingerprint: str,
        config: RbacConfig,
        sources: PolicySources,
        merged: PolicyRoleMap,
        catalog: FrozenSet[str],
    ) -> _CacheEntry:
        effective: List[Tuple[str, Tuple[str, ...]]] = []
        unknown_total = 0
        for key, roles in sorted(merged.items()):
            known = tuple(role for role in roles if role in catalog)
            unknown = [role for role in roles if role not in catalog]
            if unknown:
                unknown_total += len(unknown)
                self.auditor.report_unknown(key, unknown)
            effective.append((key, known))

        logger.info(
            "policy_map.recomputed",
            fingerprint=fingerprint,
            policies=len(effective),
            catalog_size=len(catalog),
            unknown_roles=unknown_total,
        )
        return _CacheEntry(
            fingerprint=fingerprint,
            config=config,
            sources=sources,
            catalog=catalog,
            effective=tuple(effective),
        )

    def effective(self) -> PolicyRoleMap:
        return self._resolve().as_map()

    def roles_for_policy(self, key: str) -> Optional[List[str]]:
        """Permitted roles for a policy, or None when the policy is not in the effective map."""
        for policy, roles in self._resolve().effective:
            if policy == key:
                return list(roles)
        return None

    def role_catalog(self) -> List[str]:
        """Every role referenced anywhere in the effective map."""
        roles = set()
        for _, policy_roles in self._resolve().effective:
            roles.update(policy_roles)
        return sorted(roles)

    def known_roles(self) -> List[str]:
        return sorted(self._resolve().catalog)

    def policy_keys(self) -> List[str]:
        return [policy for policy, _ in self._resolve().effective]

    def clear_cache(self) -> None:
        with self._lock:
            self._entry = None
        logger.info("policy_map.cache_cleared")

    def fingerprint(self) -> str:
        entry = self._resolve()
        return self._public_fingerprint(entry)

    def snapshot(self) -> PolicySnapshot:
        entry = self._resolve()
        effective = entry.as_map()
        roles = sorted({role for policy_roles in effective.values() for role in policy_roles})
        defaults = entry.sources.configured_defaults()
        overrides = dict(entry.sources.overrides)
        return PolicySnapshot(
            mode=entry.config.mode.value,
            persistence=entry.config.persistence,
            defaults=defaults,
            overrides=overrides,
            effective=effective,
            policies=sorted(effective),
            roles=roles,
            known_roles=sorted(entry.catalog),
            fingerprint=self._public_fingerprint(entry),
            counts={"defaults": len(defaults), "overrides": len(overrides), "effective": len(effective)},
        )

    @staticmethod
    def _public_fingerprint(entry: _CacheEntry) -> str:
        effective = entry.as_map()
        roles = {role for policy_roles in effective.values() for role in policy_roles}
        return compute_fingerprint(entry.config.mode.value, entry.config.persistence, effective, roles)

from __future__ import annotations

from typing import Any

from policygate.core.normalize import PolicyRoleMap, normalize_policy_map


def merge_policies(a: Any, b: Any) -> PolicyRoleMap:
    """Union two policy maps key by key; a later map can only add roles, never revoke them."""
    merged = normalize_policy_map(a)
    for key, roles in normalize_policy_map(b).items():
        existing = merged.get(key)
        if existing is None:
            merged[key] = roles
            continue
        merged[key] = sorted(set(existing).union(roles))
    return dict(sorted(merged.items()))


def merge_all(*maps: Any) -> PolicyRoleMap:
    merged: PolicyRoleMap = {}
    for policy_map in maps:
        merged = merge_policies(merged, policy_map)
    return merged

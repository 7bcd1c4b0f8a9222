# Role/Policy Normalizer - Pure helpers that turn loosely typed policy input into canonical maps
# Main functions: normalize_role_token(), normalize_roles(), normalize_policy_map()
# Flow: raw value -> keep non-empty strings -> trim/collapse/lower-case -> dedupe -> sort

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List

PolicyRoleMap = Dict[str, List[str]]

_WHITESPACE = re.compile(r"\s+")


def normalize_role_token(value: Any) -> str:
    """Return the canonical token for one role name, or "" when it cannot be one."""
    if not isinstance(value, str):
        return ""
    token = _WHITESPACE.sub(" ", value.strip())
    if not token:
        return ""
    return token.replace(" ", "_").lower()


def normalize_roles(value: Any) -> List[str]:
    """Normalize a single role, a list of roles, or garbage into a sorted unique token list."""
    if isinstance(value, str):
        candidates: Iterable[Any] = [value]
    elif isinstance(value, (list, tuple, set, frozenset)):
        candidates = value
    else:
        return []

    tokens = {normalize_role_token(item) for item in candidates}
    tokens.discard("")
    return sorted(tokens)


def normalize_policy_map(raw: Any) -> PolicyRoleMap:
    if not isinstance(raw, dict):
        return {}
    normalized: PolicyRoleMap = {}
    for key, roles in raw.items():
        if not isinstance(key, str) or not key.strip():
            continue
        normalized[key] = normalize_roles(roles)
    return dict(sorted(normalized.items()))

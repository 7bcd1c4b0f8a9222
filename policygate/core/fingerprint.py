from __future__ import annotations

import hashlib
import json
import time
import uuid
from typing import Any, Iterable, Mapping

from structlog import get_logger


logger = get_logger(__name__)


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def unique_fingerprint() -> str:
    """A fingerprint that never matches a cached one, forcing recomputation."""
    seed = f"{time.time_ns()}:{uuid.uuid4().hex}"
    return "volatile-" + hashlib.sha1(seed.encode("utf-8")).hexdigest()


def compute_fingerprint(mode: str, persistence: bool, policies: Mapping[str, Any], roles: Iterable[str]) -> str:
    """SHA-1 over the canonical JSON of {mode, persistence, policies, roles}."""
    try:
        payload = canonical_json(
            {
                "mode": mode,
                "persistence": persistence,
                "policies": {key: list(value) for key, value in policies.items()},
                "roles": sorted(roles),
            }
        )
    except (TypeError, ValueError) as exc:
        logger.warning("fingerprint.failed", error=str(exc))
        return unique_fingerprint()
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()

from __future__ import annotations

import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from .config import get_dev_crypto_material, get_settings
from .errors import PolicyGateError


_correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")


class InvalidToken(PolicyGateError):
    """A bearer token was presented but could not be validated."""


def correlation_id(force_new: bool = False, value: str | None = None) -> str:
    """Return correlation id for current context, creating one if missing."""
    if value:
        _correlation_id_ctx.set(value)
        return value
    current = "" if force_new else _correlation_id_ctx.get()
    if current:
        return current
    new_id = uuid.uuid4().hex
    _correlation_id_ctx.set(new_id)
    return new_id


def _load_keys() -> dict[str, Any]:
    jwks, _ = get_dev_crypto_material()
    keys: dict[str, Any] = {}
    for key in jwks.get("keys", []):
        kid = key.get("kid")
        if not kid:
            continue
        keys[kid] = key
    return keys


def decode_bearer(bearer: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return claims for a valid bearer token, None when no token was sent.

    A malformed or unverifiable token raises InvalidToken; the caller decides whether
    that counts as unauthenticated.
    """
    if not bearer:
        return None
    if not bearer.lower().startswith("bearer "):
        raise InvalidToken("Authorization header is not a bearer token")

    token = bearer.split(" ", 1)[1].strip()
    if not token:
        raise InvalidToken("Empty bearer token")

    settings = get_settings()
    try:
        header = jwt.get_unverified_header(token)
        key = _load_keys().get(header.get("kid"))
        if not key:
            raise InvalidToken("Unknown token key id")
        claims = jwt.decode(
            token,
            key,
            algorithms=[settings.JWT_ALG],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
    except JWTError as exc:
        raise InvalidToken(f"JWT validation failed: {exc}") from exc

    if not claims.get("sub"):
        raise InvalidToken("Token has no subject")
    claims.setdefault("roles", [])
    return claims


def issue_dev_jwt(subject: str, roles: list[str], ttl: int | None = None) -> str:
    """Issue a short-lived token signed with the dev key (dev and tests only)."""
    settings = get_settings()
    now = int(time.time())
    payload = {
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "sub": subject,
        "iat": now,
        "exp": now + (ttl if ttl is not None else settings.JWT_TTL_MIN * 60),
        "roles": roles,
    }
    _, private_key = get_dev_crypto_material()
    return jwt.encode(payload, private_key, algorithm=settings.JWT_ALG, headers={"kid": "dev-key"})

from __future__ import annotations

from typing import Callable, Generator, Optional

from fastapi import Depends, Request
from sqlmodel import Session
from structlog import get_logger

from policygate.core.container import RbacServices
from policygate.core.normalize import normalize_roles
from policygate.core.rbac import RequestContext
from policygate.core.security import InvalidToken, correlation_id, decode_bearer
from policygate.core.user_roles import role_tokens_for_user
from policygate.models.principal import Principal


logger = get_logger(__name__)


def get_services(request: Request) -> RbacServices:
    return request.app.state.services


def get_session(services: RbacServices = Depends(get_services)) -> Generator[Session, None, None]:
    with Session(services.engine) as session:
        yield session


def get_principal(
    request: Request,
    session: Session = Depends(get_session),
) -> Optional[Principal]:
    """Resolve the caller from the bearer token; an invalid token counts as unauthenticated."""
    try:
        claims = decode_bearer(request.headers.get("Authorization"))
    except InvalidToken as exc:
        logger.info("auth.invalid_token", error=str(exc))
        return None
    if claims is None:
        return None

    sub = str(claims["sub"])
    roles = normalize_roles(claims.get("roles")) + role_tokens_for_user(session, sub)
    principal = Principal(sub=sub, roles=roles)
    request.state.principal = principal
    return principal


def require(route_id: str) -> Callable[..., Optional[Principal]]:
    """Dependency enforcing the declared access rules of ``route_id``; denials raise RbacDenied."""

    def dependency(
        request: Request,
        services: RbacServices = Depends(get_services),
        principal: Optional[Principal] = Depends(get_principal),
    ) -> Optional[Principal]:
        route = services.registry.get(route_id)
        if route is None:
            raise KeyError(f"route {route_id} not registered")
        services.enforcer.enforce(
            RequestContext(
                route=route,
                principal=principal,
                request_id=correlation_id(),
                method=request.method,
                path=request.url.path,
            )
        )
        return principal

    return dependency

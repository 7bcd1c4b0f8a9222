# policygate Main Application - RBAC policy resolution and enforcement service
# Core functions: FastAPI app factory, correlation-id middleware, role seeding, RBAC error mapping
# Flow: startup -> load config -> seed roles -> register route declarations -> enforce per request -> audit denies

from __future__ import annotations

import logging
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session

from policygate.api import routes_audit, routes_rbac
from policygate.api.routes_internal import router as internal_router
from policygate.api.utils import deny_response, error_response
from policygate.core.config import Settings, get_settings
from policygate.core.container import RbacServices, build_services
from policygate.core.errors import InvalidRoleName, RbacDenied, RoleAlreadyExists, RoleCatalogMisconfigured, RoleNotFound
from policygate.core.security import correlation_id
from policygate.core.user_roles import canonical_role_key, normalize_role_name, resolve_role_id
from policygate.db.schemas_sqlmodel import Role


logger = structlog.get_logger(__name__)


def configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        logger_factory=structlog.PrintLoggerFactory(),
    )


def seed_roles(services: RbacServices) -> int:
    """Create store rows for configured catalog roles that do not exist yet."""
    created = 0
    with Session(services.engine) as session:
        for name in services.config_source.current().roles:
            norm = normalize_role_name(name)
            key = canonical_role_key(norm)
            if not key or resolve_role_id(session, norm) is not None:
                continue
            session.add(Role(id=f"role_{key}", name=norm))
            session.commit()
            created += 1
    if created:
        logger.info("roles.seeded", created=created)
    return created


def register_routes(services: RbacServices) -> None:
    for declaration in routes_rbac.ROUTE_DECLARATIONS + routes_audit.ROUTE_DECLARATIONS:
        services.registry.register(declaration)


def create_app(settings: Optional[Settings] = None, services: Optional[RbacServices] = None) -> FastAPI:
    settings = settings or get_settings()
    services = services or build_services(settings)
    register_routes(services)

    app = FastAPI(title=settings.APP_NAME, version="0.1.0")
    app.state.services = services

    app.include_router(internal_router)
    app.include_router(routes_rbac.router)
    app.include_router(routes_audit.router)

    @app.on_event("startup")
    async def on_startup() -> None:
        seed_roles(services)
        services.config_source.install_signal_handler()

    @app.exception_handler(RbacDenied)
    async def rbac_denied_handler(request: Request, exc: RbacDenied):
        return deny_response(exc.decision, correlation_id())

    @app.exception_handler(InvalidRoleName)
    async def invalid_role_handler(request: Request, exc: InvalidRoleName):
        return error_response("VALIDATION_FAILED", exc.message, 422, correlation_id(), {"role": [exc.message]})

    @app.exception_handler(RoleNotFound)
    async def role_not_found_handler(request: Request, exc: RoleNotFound):
        return error_response("ROLE_NOT_FOUND", "Role not found", 422, correlation_id(), {"missing_roles": exc.missing})

    @app.exception_handler(RoleAlreadyExists)
    async def role_exists_handler(request: Request, exc: RoleAlreadyExists):
        return error_response("CONFLICT", "Role already exists", 409, correlation_id(), {"role_id": exc.role_id})

    @app.exception_handler(RoleCatalogMisconfigured)
    async def catalog_misconfigured_handler(request: Request, exc: RoleCatalogMisconfigured):
        logger.error("role_catalog.misconfigured", error=str(exc))
        return error_response("RBAC_MISCONFIGURED", "Role catalog is misconfigured", 500, correlation_id())

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        inbound = request.headers.get("X-Correlation-ID")
        if inbound:
            corr = correlation_id(value=inbound)
        else:
            corr = correlation_id(force_new=True)
        request.state.correlation_id = corr
        structlog.contextvars.bind_contextvars(corr_id=corr)
        try:
            response = await call_next(request)
        except Exception as exc:  # pragma: no cover - safety net
            logging.exception("Request failed", exc_info=exc)
            body = {"error": {"code": "INTERNAL", "message": "Internal server error", "corr_id": corr}}
            response = JSONResponse(status_code=500, content=body)
        finally:
            structlog.contextvars.clear_contextvars()
        response.headers["X-Correlation-ID"] = corr
        return response

    return app


configure_logging()


def run() -> None:
    import uvicorn

    uvicorn.run("policygate.main:create_app", factory=True, host="0.0.0.0", port=8000)

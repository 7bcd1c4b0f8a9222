# Internal Service API - Health check and Prometheus metrics for the RBAC engine
# Main functions: health() status, metrics() decision counters and cache state

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from policygate.api.deps import get_services
from policygate.core.container import RbacServices


router = APIRouter(tags=["internal"])


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.get("/metrics")
def metrics(services: RbacServices = Depends(get_services)) -> Response:
    body, content_type = services.enforcer.metrics.render()
    return Response(content=body, media_type=content_type)

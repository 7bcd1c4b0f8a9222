from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from policygate.api.deps import get_services, require
from policygate.core.container import RbacServices
from policygate.core.sources import RouteDeclaration
from policygate.models.principal import Principal
from policygate.utils.audit_logger import AuditLogger


router = APIRouter(prefix="/audit", tags=["audit"])


ROUTE_DECLARATIONS = [
    RouteDeclaration(
        route_id="audit.export",
        method="GET",
        path="/audit/export",
        policy="core.audit.export",
        capability="core.audit.export",
        require_auth=True,
    ),
]


@router.get("/export")
def export_audit_events(
    category: Optional[str] = None,
    services: RbacServices = Depends(get_services),
    _: Optional[Principal] = Depends(require("audit.export")),
):
    sink = services.audit_sink
    events = sink.read_events() if isinstance(sink, AuditLogger) else []
    if category:
        events = [event for event in events if event.category == category]
    return {"ok": True, "count": len(events), "events": [event.model_dump() for event in events]}

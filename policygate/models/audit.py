from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AuditEvent(BaseModel):
    ts: str
    corr_id: str
    action: str
    category: str
    entity_type: str
    entity_id: str
    actor_id: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

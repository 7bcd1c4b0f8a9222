from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field, field_validator

from policygate.core.normalize import normalize_roles


class Principal(BaseModel):
    """Authenticated caller; roles are kept as normalized tokens."""

    sub: str
    roles: List[str] = Field(default_factory=list)

    @field_validator("roles", mode="before")
    @classmethod
    def normalize(cls, value) -> List[str]:
        return normalize_roles(value)

from __future__ import annotations

from sqlmodel import Field, SQLModel


class Role(SQLModel, table=True):
    __tablename__ = "roles"

    id: str = Field(primary_key=True, max_length=80)
    name: str = Field(index=True, max_length=64)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"

    user_id: str = Field(primary_key=True, max_length=128)
    role_id: str = Field(primary_key=True, foreign_key="roles.id", max_length=80)


__all__ = ["Role", "UserRole"]

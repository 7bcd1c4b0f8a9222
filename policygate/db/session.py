from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine


def make_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    if url in {"sqlite://", "sqlite:///:memory:"}:
        # In-memory SQLite needs one shared connection or every session sees an empty database.
        return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, connect_args=connect_args)


def create_schema(engine: Engine) -> None:
    from policygate.db import schemas_sqlmodel  # noqa: F401 - register tables

    SQLModel.metadata.create_all(engine)

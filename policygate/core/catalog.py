# Role Catalog Providers - Supply the set of role tokens considered "known"
# Main classes: StaticRoleCatalog (config), StoreRoleCatalog (SQL role table), CompositeRoleCatalog
# Flow: read source -> normalize ids and names -> set of role tokens

from __future__ import annotations

from typing import Callable, Iterable, Protocol, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from structlog import get_logger

from policygate.core.errors import RoleCatalogMisconfigured, RoleCatalogUnavailable
from policygate.core.normalize import normalize_role_token


logger = get_logger(__name__)


class RoleCatalogProvider(Protocol):
    def roles(self) -> Set[str]:
        ...


def _tokens(values: Iterable[object]) -> Set[str]:
    tokens = {normalize_role_token(value) for value in values}
    tokens.discard("")
    return tokens


class StaticRoleCatalog:
    """Catalog backed by a list of role names, read fresh on every call."""

    def __init__(self, names: Callable[[], Iterable[str]] | Iterable[str]):
        self._names = names

    def roles(self) -> Set[str]:
        names = self._names() if callable(self._names) else self._names
        return _tokens(names)


class StoreRoleCatalog:
    """Catalog backed by the role table; both ids and display names count as known tokens."""

    def __init__(self, engine):
        if engine is None:
            raise RoleCatalogMisconfigured("StoreRoleCatalog requires a database engine")
        self._engine = engine

    def roles(self) -> Set[str]:
        from policygate.db.schemas_sqlmodel import Role

        try:
            with Session(self._engine) as session:
                rows = session.exec(select(Role)).all()
        except SQLAlchemyError as exc:
            raise RoleCatalogUnavailable(f"role store unavailable: {exc}") from exc

        tokens: Set[str] = set()
        for row in rows:
            tokens.update(_tokens([row.id, row.name]))
        return tokens


class CompositeRoleCatalog:
    def __init__(self, *providers: RoleCatalogProvider):
        if not providers:
            raise RoleCatalogMisconfigured("CompositeRoleCatalog needs at least one provider")
        self.providers = providers

    def roles(self) -> Set[str]:
        tokens: Set[str] = set()
        for provider in self.providers:
            tokens.update(provider.roles())
        return tokens


def snapshot_catalog(provider: RoleCatalogProvider) -> Set[str]:
    """Read the catalog once; an unavailable store yields an empty catalog so policies fail closed."""
    try:
        roles = provider.roles()
    except RoleCatalogUnavailable as exc:
        logger.warning("role_catalog.unavailable", error=str(exc))
        return set()
    if roles is None or isinstance(roles, (str, bytes)):
        raise RoleCatalogMisconfigured(f"role catalog provider returned {type(roles).__name__}")
    try:
        return _tokens(roles)
    except TypeError as exc:
        raise RoleCatalogMisconfigured("role catalog provider returned a non-iterable value") from exc

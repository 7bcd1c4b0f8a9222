from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import Engine

from policygate.core.auditor import UnknownRoleAuditor
from policygate.core.catalog import CompositeRoleCatalog, RoleCatalogProvider, StaticRoleCatalog, StoreRoleCatalog
from policygate.core.config import RbacConfig, RbacConfigSource, Settings
from policygate.core.policy_map import PolicyMapService
from policygate.core.rbac import RbacEnforcer
from policygate.core.sources import RouteRegistry
from policygate.db.session import create_schema, make_engine
from policygate.utils.audit_logger import AuditLogger, AuditSink


@dataclass
class RbacServices:
    """Everything that holds process-wide RBAC state, built once and passed by reference."""

    settings: Settings
    config_source: RbacConfigSource
    engine: Engine
    audit_sink: AuditSink
    registry: RouteRegistry
    catalog: RoleCatalogProvider
    auditor: UnknownRoleAuditor
    policy_map: PolicyMapService
    enforcer: RbacEnforcer


def build_services(
    settings: Settings,
    *,
    config: Optional[RbacConfig] = None,
    engine: Optional[Engine] = None,
    audit_sink: Optional[AuditSink] = None,
    registry: Optional[RouteRegistry] = None,
) -> RbacServices:
    if config is not None:
        config_source = RbacConfigSource(config=config)
    else:
        config_source = RbacConfigSource(path=Path(settings.rbac_config_path))

    engine = engine if engine is not None else make_engine(settings.SQLITE_URL)
    create_schema(engine)

    sink: AuditSink = audit_sink or AuditLogger(Path(settings.AUDIT_WORM_DIR), enabled=settings.AUDIT_ENABLED)
    registry = registry if registry is not None else RouteRegistry()

    static_catalog = StaticRoleCatalog(lambda: config_source.current().roles)
    catalog: RoleCatalogProvider = static_catalog
    if settings.RBAC_ROLE_STORE:
        catalog = CompositeRoleCatalog(static_catalog, StoreRoleCatalog(engine))

    auditor = UnknownRoleAuditor(sink, lambda: config_source.current().persistence_enabled)
    policy_map = PolicyMapService(config_source, catalog, registry=registry, auditor=auditor)
    enforcer = RbacEnforcer(policy_map, config_source, audit_sink=sink)

    return RbacServices(
        settings=settings,
        config_source=config_source,
        engine=engine,
        audit_sink=sink,
        registry=registry,
        catalog=catalog,
        auditor=auditor,
        policy_map=policy_map,
        enforcer=enforcer,
    )

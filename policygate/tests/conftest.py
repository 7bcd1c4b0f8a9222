from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from policygate.core.auditor import UNKNOWN_ROLE_ACTION, UnknownRoleAuditor
from policygate.core.catalog import StaticRoleCatalog
from policygate.core.config import RbacConfig, RbacConfigSource, Settings
from policygate.core.container import build_services
from policygate.core.policy_map import PolicyMapService
from policygate.core.rbac import RbacEnforcer
from policygate.core.security import issue_dev_jwt
from policygate.core.sources import RouteRegistry
from policygate.db.session import make_engine
from policygate.main import create_app
from policygate.utils.audit_logger import AuditResult


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def log(self, event: Dict[str, Any]) -> AuditResult:
        self.events.append(dict(event))
        return AuditResult(ok=True, event_hash=str(len(self.events)))

    def actions(self, action: str) -> List[Dict[str, Any]]:
        return [event for event in self.events if event["action"] == action]

    def unknown_role_audits(self, policy: str) -> List[Dict[str, Any]]:
        return [event for event in self.actions(UNKNOWN_ROLE_ACTION) if event["entity_id"] == policy]


class ExplodingSink:
    def log(self, event: Dict[str, Any]) -> AuditResult:
        raise RuntimeError("audit store down")


class Rig:
    """A policy map + enforcer wired against an editable catalog and config."""

    def __init__(self, config: RbacConfig, catalog: List[str], sink) -> None:
        self.catalog = list(catalog)
        self.sink = sink
        self.config_source = RbacConfigSource(config=config)
        self.registry = RouteRegistry()
        self.auditor = UnknownRoleAuditor(sink, lambda: self.config_source.current().persistence_enabled)
        self.policy_map = PolicyMapService(
            self.config_source,
            StaticRoleCatalog(lambda: self.catalog),
            registry=self.registry,
            auditor=self.auditor,
        )
        self.enforcer = RbacEnforcer(self.policy_map, self.config_source, audit_sink=sink)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def exploding_sink():
    return ExplodingSink()


@pytest.fixture
def make_rig(sink):
    def factory(catalog=None, **config: Any) -> Rig:
        config.setdefault("mode", "persist")
        config.setdefault("persistence", True)
        return Rig(RbacConfig.model_validate(config), catalog or [], sink)

    return factory


@pytest.fixture
def settings(tmp_path):
    return Settings(SQLITE_URL="sqlite://", AUDIT_WORM_DIR=str(tmp_path / "audit"))


@pytest.fixture
def services(settings):
    config = RbacConfig.model_validate(
        {
            "mode": "persist",
            "persistence": True,
            "roles": ["Admin", "Auditor", "Risk Manager", "User"],
            "policies": {
                "defaults": {
                    "core.rbac.view": ["role_admin", "role_auditor"],
                    "core.audit.export": ["role_admin", "role_auditor"],
                    "rbac.roles.manage": ["role_admin"],
                    "rbac.user_roles.manage": ["role_admin"],
                },
                "overrides": {"core.metrics.view": ["role_risk_manager", "ghost_role"]},
            },
            "capabilities": {"core": {"audit": {"export": True}}},
        }
    )
    return build_services(settings, config=config, engine=make_engine(settings.SQLITE_URL))


@pytest.fixture
def client(settings, services):
    app = create_app(settings, services)
    with TestClient(app) as test_client:
        yield test_client


def bearer(sub: str = "user-1", roles=None) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_dev_jwt(sub, roles or [])}"}


@pytest.fixture
def make_header():
    return bearer


@pytest.fixture
def admin_header():
    return bearer("admin-1", ["role_admin"])


@pytest.fixture
def user_header():
    return bearer("user-1", ["role_user"])

from pathlib import Path

import pytest

from policygate.core.config import RbacConfig, RbacConfigSource, RbacMode, load_rbac_config


def test_flat_policy_map_is_read_as_defaults():
    config = RbacConfig.model_validate({"policies": {"core.audit.view": ["Auditor"]}})

    assert config.policies.defaults == {"core.audit.view": ["Auditor"]}
    assert config.policies.overrides == {}


def test_malformed_values_fall_back_to_defaults():
    config = RbacConfig.model_validate(
        {
            "mode": "",
            "persistence": None,
            "roles": ["Admin", "", 3, "User"],
            "policies": {"defaults": ["not", "a", "map"], "overrides": None},
            "capabilities": "everything",
        }
    )

    assert config.mode is RbacMode.STUB
    assert config.persistence is False
    assert config.persistence_enabled is False
    assert config.roles == ["Admin", "User"]
    assert config.policies.defaults == {}
    assert config.policies.overrides == {}
    assert config.capabilities == {}


@pytest.mark.parametrize(
    "mode, persistence, expected",
    [("stub", False, False), ("stub", True, True), ("persist", False, True), (" PERSIST ", False, True)],
)
def test_persistence_enabled(mode, persistence, expected):
    config = RbacConfig.model_validate({"mode": mode, "persistence": persistence})

    assert config.persistence_enabled is expected


def test_capability_lookup_walks_dotted_path():
    config = RbacConfig.model_validate(
        {"capabilities": {"core": {"audit": {"export": True}, "evidence": {"upload": "true"}}}}
    )

    assert config.capability_enabled("core.audit.export")
    assert not config.capability_enabled("core.evidence.upload")
    assert not config.capability_enabled("core.audit")
    assert not config.capability_enabled("core.audit.export.extra")
    assert not config.capability_enabled("missing.flag")


def test_load_rbac_config_from_yaml(tmp_path):
    path = tmp_path / "rbac.yml"
    path.write_text(
        "mode: persist\n"
        "roles: [Admin]\n"
        "policies:\n"
        "  overrides:\n"
        "    core.metrics.view: [role_admin]\n",
        "utf-8",
    )

    config = load_rbac_config(path)

    assert config.mode is RbacMode.PERSIST
    assert config.policies.overrides == {"core.metrics.view": ["role_admin"]}


def test_missing_config_file_yields_defaults(tmp_path):
    config = load_rbac_config(tmp_path / "absent.yml")

    assert config == RbacConfig()


def test_non_mapping_config_is_rejected(tmp_path):
    path = tmp_path / "rbac.yml"
    path.write_text("- just\n- a list\n", "utf-8")

    with pytest.raises(ValueError):
        load_rbac_config(path)


def test_source_reload_picks_up_file_changes(tmp_path):
    path = tmp_path / "rbac.yml"
    path.write_text("mode: stub\n", "utf-8")
    source = RbacConfigSource(path=path)
    assert source.current().mode is RbacMode.STUB
    version = source.version

    path.write_text("mode: persist\n", "utf-8")
    source.reload()

    assert source.current().mode is RbacMode.PERSIST
    assert source.version == version + 1


def test_shipped_config_is_valid():
    path = Path(__file__).resolve().parents[1] / "policies" / "rbac.yml"

    config = load_rbac_config(path)

    assert config.enabled
    assert config.persistence_enabled
    assert "core.rbac.view" in config.policies.defaults
    assert config.capability_enabled("core.audit.export")

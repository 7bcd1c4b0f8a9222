import threading

import pytest

from policygate.core.auditor import UNKNOWN_ROLE_ACTION
from policygate.core.catalog import CompositeRoleCatalog, StaticRoleCatalog, snapshot_catalog
from policygate.core.config import RbacConfig
from policygate.core.errors import RoleCatalogMisconfigured, RoleCatalogUnavailable
from policygate.core.fingerprint import compute_fingerprint
from policygate.core.sources import BASELINE_POLICIES


FULL_CATALOG = ["admin", "auditor"]


def test_unknown_role_filtered_and_audited_once(make_rig, sink):
    rig = make_rig(catalog=FULL_CATALOG, policies={"overrides": {"p.view": ["admin", "ghost"]}})

    assert rig.policy_map.effective()["p.view"] == ["admin"]
    events = sink.actions(UNKNOWN_ROLE_ACTION)
    assert len(events) == 1
    event = events[0]
    assert event["category"] == "RBAC"
    assert event["entity_type"] == "rbac.policy"
    assert event["entity_id"] == "p.view"
    assert event["meta"]["unknown_roles"] == ["ghost"]

    for _ in range(3):
        assert rig.policy_map.effective()["p.view"] == ["admin"]
    assert len(sink.actions(UNKNOWN_ROLE_ACTION)) == 1


def test_unknown_roles_are_normalized_and_sorted_in_audit(make_rig, sink):
    rig = make_rig(catalog=["role_admin"], policies={"core.metrics.view": ["role_admin", "NoSuch", "other unknown"]})

    assert rig.policy_map.effective()["core.metrics.view"] == ["role_admin"]
    (event,) = sink.unknown_role_audits("core.metrics.view")
    assert event["meta"]["unknown_roles"] == ["admin", "nosuch", "other_unknown"]


def test_stub_mode_never_audits_unknown_roles(make_rig, sink):
    rig = make_rig(
        catalog=["admin"],
        mode="stub",
        persistence=False,
        policies={"overrides": {"p.view": ["admin", "ghost"]}},
    )

    assert rig.policy_map.effective()["p.view"] == ["admin"]
    rig.policy_map.clear_cache()
    rig.policy_map.effective()
    assert sink.events == []


def test_persistence_flag_alone_enables_unknown_role_audits(make_rig, sink):
    rig = make_rig(catalog=FULL_CATALOG, mode="stub", persistence=True, policies={"p.view": ["ghost"]})

    rig.policy_map.effective()

    assert [e["entity_id"] for e in sink.actions(UNKNOWN_ROLE_ACTION)] == ["p.view"]


def test_cache_serves_identical_results_without_recompute(make_rig, sink):
    rig = make_rig(catalog=FULL_CATALOG, policies={"p.view": ["Admin"]})

    first = rig.policy_map.effective()
    second = rig.policy_map.effective()

    assert first == second
    assert rig.policy_map.recompute_count == 1
    assert rig.policy_map.fingerprint() == rig.policy_map.fingerprint()
    assert sink.events == []


def test_returned_map_is_a_copy(make_rig):
    rig = make_rig(catalog=["admin"], policies={"p.view": ["admin"]})

    rig.policy_map.effective()["p.view"].append("intruder")

    assert rig.policy_map.effective()["p.view"] == ["admin"]


def test_catalog_change_invalidates_without_reaudit(make_rig, sink):
    rig = make_rig(catalog=["admin"], policies={"core.metrics.view": ["Admin", "Auditor"]})

    assert rig.policy_map.effective()["core.metrics.view"] == ["admin"]
    before = rig.policy_map.fingerprint()
    assert len(sink.unknown_role_audits("core.metrics.view")) == 1

    rig.catalog.append("Auditor")

    assert rig.policy_map.effective()["core.metrics.view"] == ["admin", "auditor"]
    assert rig.policy_map.fingerprint() != before
    assert rig.policy_map.recompute_count == 2
    assert len(sink.unknown_role_audits("core.metrics.view")) == 1


def test_clear_cache_recomputes_but_does_not_replay_audit(make_rig, sink):
    rig = make_rig(catalog=FULL_CATALOG, policies={"p.view": ["admin", "ghost"]})
    rig.policy_map.effective()

    rig.policy_map.clear_cache()
    rig.policy_map.effective()

    assert rig.policy_map.recompute_count == 2
    assert len(sink.unknown_role_audits("p.view")) == 1


def test_new_unknown_roles_for_audited_policy_are_not_reported(make_rig, sink):
    rig = make_rig(catalog=FULL_CATALOG, policies={"p.view": ["admin", "ghost"]})
    rig.policy_map.effective()

    rig.config_source.set(
        RbacConfig.model_validate({"mode": "persist", "policies": {"p.view": ["admin", "ghost", "phantom"]}})
    )
    rig.policy_map.effective()

    assert rig.policy_map.recompute_count == 2
    assert len(sink.unknown_role_audits("p.view")) == 1


def test_config_change_is_picked_up_on_next_call(make_rig):
    rig = make_rig(catalog=FULL_CATALOG, policies={"p.view": ["admin"]})
    assert rig.policy_map.roles_for_policy("p.view") == ["admin"]

    rig.config_source.set(
        RbacConfig.model_validate({"mode": "persist", "policies": {"overrides": {"p.view": ["auditor"]}}})
    )

    assert rig.policy_map.roles_for_policy("p.view") == ["admin", "auditor"]


def test_baseline_plus_override_scenario(make_rig):
    rig = make_rig(
        catalog=["admin", "auditor", "risk_manager"],
        policies={"overrides": {"core.audit.view": ["risk_manager"]}},
    )

    assert rig.policy_map.roles_for_policy("core.audit.view") == ["admin", "auditor", "risk_manager"]


def test_every_source_contributes_keys(make_rig):
    rig = make_rig(
        catalog=["admin", "ops"],
        policies={"defaults": {"cfg.default": ["ops"]}, "overrides": {"cfg.override": ["ops"]}},
    )
    rig.registry.declare("reports.index", policy="route.only", roles=["ops"])
    rig.registry.declare("reports.bare", policy="route.bare")

    keys = rig.policy_map.policy_keys()

    assert set(BASELINE_POLICIES) <= set(keys)
    assert {"cfg.default", "cfg.override", "route.only", "route.bare"} <= set(keys)
    assert keys == sorted(keys)
    assert rig.policy_map.roles_for_policy("route.bare") == []
    assert rig.policy_map.roles_for_policy("missing.policy") is None


def test_route_registration_after_first_use_is_observed(make_rig):
    rig = make_rig(catalog=["admin", "ops"])
    assert rig.policy_map.roles_for_policy("late.policy") is None

    rig.registry.declare("late.route", policy="late.policy", roles="Ops")

    assert rig.policy_map.roles_for_policy("late.policy") == ["ops"]


def test_role_catalog_lists_referenced_roles_only(make_rig):
    rig = make_rig(catalog=["admin", "auditor", "unused"], policies={"p.view": ["auditor", "ghost"]})

    roles = rig.policy_map.role_catalog()

    assert roles == ["admin", "auditor"]
    assert "unused" in rig.policy_map.known_roles()


def test_public_fingerprint_matches_effective_output(make_rig):
    rig = make_rig(catalog=["admin"], policies={"p.view": ["admin"]})

    effective = rig.policy_map.effective()
    expected = compute_fingerprint("persist", True, effective, rig.policy_map.role_catalog())

    assert rig.policy_map.fingerprint() == expected
    assert len(expected) == 40


def test_unserializable_input_falls_back_to_unique_fingerprint():
    first = compute_fingerprint("persist", True, {"p": [object()]}, [])
    second = compute_fingerprint("persist", True, {"p": [object()]}, [])

    assert first != second
    assert first.startswith("volatile-")


def test_unavailable_catalog_fails_closed(make_rig):
    class DownCatalog:
        def roles(self):
            raise RoleCatalogUnavailable("db down")

    rig = make_rig(policies={"p.view": ["admin"]})
    rig.policy_map.catalog = DownCatalog()

    assert rig.policy_map.roles_for_policy("p.view") == []
    assert rig.policy_map.roles_for_policy("core.settings.manage") == []


def test_misconfigured_catalog_raises(make_rig):
    class BrokenCatalog:
        def roles(self):
            return None

    rig = make_rig()
    rig.policy_map.catalog = BrokenCatalog()

    with pytest.raises(RoleCatalogMisconfigured):
        rig.policy_map.effective()


def test_composite_catalog_unions_providers():
    catalog = CompositeRoleCatalog(StaticRoleCatalog(["Admin"]), StaticRoleCatalog(["Risk Manager", "admin"]))

    assert snapshot_catalog(catalog) == {"admin", "risk_manager"}
    with pytest.raises(RoleCatalogMisconfigured):
        CompositeRoleCatalog()


def test_concurrent_first_use_audits_once(make_rig, sink):
    rig = make_rig(catalog=FULL_CATALOG, policies={f"p.{i}": ["admin", "ghost"] for i in range(20)})
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(rig.policy_map.effective())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 8
    assert all(result == results[0] for result in results)
    assert rig.policy_map.recompute_count == 1
    assert len(sink.actions(UNKNOWN_ROLE_ACTION)) == 20


def test_audit_sink_failure_does_not_break_resolution(make_rig, exploding_sink):
    rig = make_rig(catalog=FULL_CATALOG, policies={"p.view": ["admin", "ghost"]})
    rig.auditor._sink = exploding_sink

    assert rig.policy_map.effective()["p.view"] == ["admin"]
    assert rig.auditor.audited_policies() == {"p.view"}

import pytest

from policygate.core.merge import merge_all, merge_policies
from policygate.core.normalize import normalize_policy_map, normalize_role_token, normalize_roles


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Admin", ["admin"]),
        (["Admin", "admin", " ADMIN "], ["admin"]),
        (["Auditor", "Admin"], ["admin", "auditor"]),
        (["Other   Unknown"], ["other_unknown"]),
        (["", None, 3, "User"], ["user"]),
        (None, []),
        (42, []),
        ({"admin": True}, []),
        ("", []),
    ],
)
def test_normalize_roles(raw, expected):
    assert normalize_roles(raw) == expected


@pytest.mark.parametrize("raw", ["Risk Manager", ["B", "a", "a "], [" x  y "], None, ["role_Admin", "ROLE_ADMIN"]])
def test_normalize_roles_is_idempotent(raw):
    once = normalize_roles(raw)
    assert normalize_roles(once) == once


def test_role_token_rejects_non_strings():
    assert normalize_role_token(None) == ""
    assert normalize_role_token("   ") == ""
    assert normalize_role_token("RiSk-ManAgeR") == "risk-manager"


def test_policy_map_drops_bad_keys_and_keeps_case_of_keys():
    raw = {
        "core.Audit.view": ["Admin"],
        "": ["admin"],
        "  ": ["admin"],
        7: ["admin"],
        "core.empty": "not-a-list-but-a-role",
        "core.garbage": {"x": 1},
    }

    assert normalize_policy_map(raw) == {
        "core.Audit.view": ["admin"],
        "core.empty": ["not-a-list-but-a-role"],
        "core.garbage": [],
    }
    assert normalize_policy_map(["not", "a", "map"]) == {}


def test_merge_is_union_not_override():
    baseline = {"core.audit.view": ["admin", "auditor"]}
    override = {"core.audit.view": ["risk_manager"]}

    assert merge_policies(baseline, override) == {"core.audit.view": ["admin", "auditor", "risk_manager"]}


def test_merge_keeps_keys_from_either_side():
    a = {"p.one": ["Admin"], "p.shared": ["x"]}
    b = {"p.two": [], "p.shared": ["Y", "x"]}

    merged = merge_policies(a, b)

    assert list(merged) == ["p.one", "p.shared", "p.two"]
    for key in merged:
        expected = set(normalize_roles(a.get(key))) | set(normalize_roles(b.get(key)))
        assert expected <= set(merged[key])
    assert merged["p.two"] == []


def test_merge_all_applies_sources_in_order():
    merged = merge_all({"p": ["a"]}, {"p": ["b"]}, {"q": "c"}, None)

    assert merged == {"p": ["a", "b"], "q": ["c"]}

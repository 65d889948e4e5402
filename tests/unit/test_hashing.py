"""Tests for topology hashing."""

from durableflow.graph.dsl import normalize_dsl
from durableflow.graph.models import FunctionMeta
from durableflow.hashing import compute_graph_hash, compute_step_hash, compute_step_hashes


def _steps(first="createOrg", second="sendWelcome"):
    return [
        {"type": "rpc", "step_name": first, "rpc_name": first},
        {
            "type": "rpc",
            "step_name": second,
            "rpc_name": second,
            "input": {"orgId": {"type": "ref", "path": f"{first}.output.orgId"}},
        },
    ]


def _hash(graph, functions_meta=None):
    compute_step_hashes(graph, functions_meta or {})
    return compute_graph_hash(graph)


def test_identical_topologies_hash_identically():
    a = normalize_dsl("onboarding", _steps())
    b = normalize_dsl("onboarding", _steps())
    assert _hash(a) == _hash(b)
    assert len(_hash(a)) == 16


def test_metadata_does_not_affect_hash():
    plain = normalize_dsl("onboarding", _steps())
    documented = normalize_dsl(
        "onboarding-v2",
        _steps(),
        title="Onboarding",
        description="Creates an org",
        tags=["growth"],
    )
    documented.nodes["createOrg"].title = "Create the organization"
    documented.nodes["createOrg"].description = "Calls the org service"
    assert _hash(plain) == _hash(documented)


def test_ordering_change_changes_hash():
    original = normalize_dsl("onboarding", _steps())
    reordered = normalize_dsl(
        "onboarding",
        [
            {"type": "rpc", "step_name": "sendWelcome", "rpc_name": "sendWelcome"},
            {"type": "rpc", "step_name": "createOrg", "rpc_name": "createOrg"},
        ],
    )
    assert _hash(original) != _hash(reordered)


def test_schema_change_changes_hash():
    v1 = {"createOrg": FunctionMeta(rpc_name="createOrg", input_schema_hash="aaa")}
    v2 = {"createOrg": FunctionMeta(rpc_name="createOrg", input_schema_hash="bbb")}
    assert _hash(normalize_dsl("onboarding", _steps()), v1) != _hash(
        normalize_dsl("onboarding", _steps()), v2
    )


def test_step_hash_depends_on_contract():
    assert compute_step_hash("createOrg", None) == compute_step_hash("createOrg", None)
    meta = FunctionMeta(rpc_name="createOrg", output_schema_hash="x")
    assert compute_step_hash("createOrg", meta) != compute_step_hash("createOrg", None)


def test_compute_step_hashes_sets_rpc_nodes_only():
    graph = normalize_dsl(
        "onboarding",
        _steps() + [{"type": "sleep", "step_name": "wait", "duration": "1s"}],
    )
    compute_step_hashes(graph, {})
    assert graph.nodes["createOrg"].step_hash is not None
    assert not hasattr(graph.nodes["wait"], "step_hash")

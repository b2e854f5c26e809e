import pytest

from lockwatch.communication.message_passing import (
    build_kernel_registry, make_rpc_evaluate_holdings, make_rpc_recommend, rpc_evaluate,
)
from lockwatch.detection.advisor import ResolutionAdvisor
from lockwatch.detection.scenarios import EXAMPLE_SCENARIOS

LOCKS = [
    {"id": "A", "user_id": "U1", "resource_id": "R1", "requested_at": 1, "acquired_at": 1},
    {"id": "B", "user_id": "U1", "resource_id": "R2", "requested_at": 2},
    {"id": "C", "user_id": "U2", "component_id": "R2",
     "requested_at": "2024-01-01T00:00:00Z", "acquired_at": "2024-01-01T00:00:00Z"},
    {"id": "D", "user_id": "U2", "resource_id": "R1", "requested_at": 3},
]


def test_evaluate_accepts_raw_records():
    out = rpc_evaluate(LOCKS)
    assert out["hasDeadlock"] is True
    assert len(out["cycles"]) == 1
    assert out["cycles"][0][0] == out["cycles"][0][-1]


def test_evaluate_reports_undecodable_records():
    out = rpc_evaluate(LOCKS[:2] + [{"id": "X", "user_id": "U3"}])
    assert out["hasDeadlock"] is False
    assert any("'X'" in w for w in out["warnings"])


def test_evaluate_with_known_users_and_resources():
    out = rpc_evaluate(LOCKS, resources=[{"id": "R1", "title": "Hero"}], users=["U1", "U2"])
    # R2 is not a known resource, so the cycle cannot close
    assert out["hasDeadlock"] is False
    assert out["warnings"]


def test_recommend_round_trip():
    cycles = rpc_evaluate(LOCKS)["cycles"]
    recommend = make_rpc_recommend(ResolutionAdvisor())
    ranked = recommend(cycles, LOCKS, metadata={"U2": {"idle_time": 3600}})
    assert len(ranked) == 1
    assert ranked[0][0]["target_user_id"] == "U2"
    assert {r["target_lock_id"] for r in ranked[0]} == {"A", "C"}


def test_evaluate_holdings_by_name():
    run = make_rpc_evaluate_holdings(ResolutionAdvisor())
    out = run(name="three_way")
    assert out["hasDeadlock"] is True
    assert len(out["recommendations"]) == 1
    assert {r["target_lock_id"] for r in out["recommendations"][0]} == {
        "P1:hold:R1", "P2:hold:R2", "P3:hold:R3",
    }


def test_evaluate_holdings_from_processes():
    run = make_rpc_evaluate_holdings(ResolutionAdvisor())
    out = run(processes=EXAMPLE_SCENARIOS["safe_state"]["processes"])
    assert out["hasDeadlock"] is False
    assert out["recommendations"] == []
    out = run(processes=[
        {"id": "A", "holding": ["X"], "requesting": ["Y"]},
        {"id": "B", "holding": ["Y"], "requesting": ["X"]},
    ])
    assert out["hasDeadlock"] is True


@pytest.mark.parametrize("params", [
    {"name": "nope"},
    {},
    {"processes": []},
    {"processes": [{"holding": ["R1"]}]},
    {"processes": [{"id": "P1", "holding": "R1"}]},
])
def test_evaluate_holdings_rejects_bad_input(params):
    with pytest.raises(ValueError):
        make_rpc_evaluate_holdings(ResolutionAdvisor())(**params)


def test_kernel_registry_methods():
    rpc = build_kernel_registry(ResolutionAdvisor())
    assert rpc.methods == ["kernel.evaluate", "kernel.evaluate_holdings", "kernel.recommend"]

from lockwatch.detection.cycles import MSG_EMPTY, MSG_SAFE, evaluate, find_cycles
from lockwatch.detection.graph import WAIT, WaitForGraph
from lockwatch.detection.models import LedgerSnapshot, Lock, Node, NodeKind
from lockwatch.detection.scenarios import EXAMPLE_SCENARIOS, scenario_snapshot, snapshot_from_holdings


def held(lid, user, res, t=1.0):
    return Lock(lid, user, res, requested_at=t, acquired_at=t)


def pending(lid, user, res, t=2.0):
    return Lock(lid, user, res, requested_at=t)


def classic():
    return [
        held('A', 'U1', 'R1'), pending('B', 'U1', 'R2'),
        held('C', 'U2', 'R2'), pending('D', 'U2', 'R1'),
    ]


def member_ids(cycle):
    return {n.id for n in cycle.members}


def test_empty_ledger():
    res = evaluate(LedgerSnapshot(locks=()))
    assert not res.has_deadlock
    assert res.cycles == []
    assert res.message == MSG_EMPTY


def test_classic_two_cycle():
    res = evaluate(LedgerSnapshot(locks=tuple(classic())))
    assert res.has_deadlock
    assert len(res.cycles) == 1
    assert member_ids(res.cycles[0]) == {'U1', 'R1', 'U2', 'R2'}
    assert '1 circular wait' in res.message


def test_cycle_is_closed_and_alternating():
    cyc = evaluate(LedgerSnapshot(locks=tuple(classic()))).cycles[0]
    assert cyc.nodes[0] == cyc.nodes[-1]
    kinds = [n.kind for n in cyc.nodes]
    assert all(a != b for a, b in zip(kinds, kinds[1:]))
    assert len(cyc) == 4
    interior = cyc.nodes[:-1]
    assert len(set(interior)) == len(interior)


def test_three_way_cycle():
    res = evaluate(scenario_snapshot('three_way'))
    assert res.has_deadlock
    assert len(res.cycles) == 1
    assert sorted(res.cycles[0].users) == ['P1', 'P2', 'P3']
    assert len(res.cycles[0]) == 6


def test_safe_state():
    res = evaluate(scenario_snapshot('safe_state'))
    assert not res.has_deadlock
    assert res.cycles == []
    assert res.message == MSG_SAFE


def test_complex_scenario_cycle_excludes_bystanders():
    res = evaluate(scenario_snapshot('complex'))
    assert len(res.cycles) == 1
    assert sorted(res.cycles[0].users) == ['P1', 'P2', 'P3']
    assert 'R5' not in res.cycles[0].resources


def test_request_on_free_resource_never_cycles():
    locks = [held('A', 'U1', 'R1'), pending('B', 'U1', 'R2'), pending('C', 'U2', 'R1'),
             pending('D', 'U2', 'R2')]
    res = evaluate(LedgerSnapshot(locks=tuple(locks)))
    assert not res.has_deadlock


def test_release_breaks_the_cycle():
    locks = classic()
    locks[0] = Lock('A', 'U1', 'R1', requested_at=1.0, acquired_at=1.0, released_at=3.0)
    assert not evaluate(LedgerSnapshot(locks=tuple(locks))).has_deadlock


def test_two_disjoint_cycles_both_reported():
    locks = classic() + [
        held('E', 'U3', 'R3'), pending('F', 'U3', 'R4'),
        held('G', 'U4', 'R4'), pending('H', 'U4', 'R3'),
    ]
    res = evaluate(LedgerSnapshot(locks=tuple(locks)))
    assert len(res.cycles) == 2
    assert {frozenset(member_ids(c)) for c in res.cycles} == {
        frozenset({'U1', 'R1', 'U2', 'R2'}),
        frozenset({'U3', 'R3', 'U4', 'R4'}),
    }
    assert '2 circular wait' in res.message


def test_cycles_sharing_a_prefix_are_all_found():
    # U1 holds R1 and R3 and waits on R2 (held by U2); U2 waits on both R1 and R3.
    # Both cycles share the U1 -> R2 -> U2 prefix.
    locks = [
        held('A', 'U1', 'R1'), held('B', 'U1', 'R3'), pending('C', 'U1', 'R2'),
        held('D', 'U2', 'R2'), pending('E', 'U2', 'R1'), pending('F', 'U2', 'R3'),
    ]
    res = evaluate(LedgerSnapshot(locks=tuple(locks)))
    assert {frozenset(member_ids(c)) for c in res.cycles} == {
        frozenset({'U1', 'R1', 'U2', 'R2'}),
        frozenset({'U1', 'R3', 'U2', 'R2'}),
    }


OVERLAPPING = [
    # U1 holds R1 and waits on R2 and R3; U2 and U3 each hold one of those and wait on R1
    held('A', 'U1', 'R1'), pending('B', 'U1', 'R2'), pending('C', 'U1', 'R3'),
    held('D', 'U2', 'R2'), pending('E', 'U2', 'R1'),
    held('F', 'U3', 'R3'), pending('G', 'U3', 'R1'),
]


def test_cycles_through_a_shared_node_are_all_found():
    res = evaluate(LedgerSnapshot(locks=tuple(OVERLAPPING)))
    assert [member_ids(c) for c in res.cycles] == [
        {'U1', 'R1', 'U2', 'R2'},
        {'U1', 'R1', 'U3', 'R3'},
    ]
    assert '2 circular wait' in res.message


def test_overlapping_cycles_independent_of_lock_order():
    forward = evaluate(LedgerSnapshot(locks=tuple(OVERLAPPING)))
    backward = evaluate(LedgerSnapshot(locks=tuple(reversed(OVERLAPPING))))
    assert [c.nodes for c in forward.cycles] == [c.nodes for c in backward.cycles]
    assert {c.key for c in forward.cycles} == {c.key for c in backward.cycles}


def test_cycles_open_at_smallest_user():
    res = evaluate(LedgerSnapshot(locks=tuple(reversed(OVERLAPPING))))
    assert all(c.nodes[0] == Node.user('U1') for c in res.cycles)


def test_determinism_regardless_of_lock_order():
    locks = classic() + [held('E', 'U3', 'R3'), pending('F', 'U3', 'R1')]
    a = evaluate(LedgerSnapshot(locks=tuple(locks)))
    b = evaluate(LedgerSnapshot(locks=tuple(reversed(locks))))
    assert a.has_deadlock == b.has_deadlock
    assert {c.members for c in a.cycles} == {c.members for c in b.cycles}
    again = evaluate(LedgerSnapshot(locks=tuple(locks)))
    assert [c.nodes for c in again.cycles] == [c.nodes for c in a.cycles]


def test_find_cycles_on_hand_built_graph():
    g = WaitForGraph()
    u1, u2, r1, r2 = Node.user('u1'), Node.user('u2'), Node.resource('r1'), Node.resource('r2')
    g.add_edge(u1, r1, WAIT)
    g.add_edge(r1, u2, 'allocation')
    g.add_edge(u2, r2, WAIT)
    g.add_edge(r2, u1, 'allocation')
    cycles = find_cycles(g)
    assert len(cycles) == 1
    assert cycles[0].members == {u1, u2, r1, r2}
    assert cycles[0].nodes[0].kind == NodeKind.USER
    assert cycles[0].nodes[0] == cycles[0].nodes[-1]


def test_result_dict_uses_tagged_nodes():
    d = evaluate(LedgerSnapshot(locks=tuple(classic()))).to_dict()
    assert d['hasDeadlock'] is True
    assert all(set(n) == {'kind', 'id'} for n in d['cycles'][0])


def test_holdings_reduction_matches_examples():
    for name, sc in EXAMPLE_SCENARIOS.items():
        snap = snapshot_from_holdings(sc['processes'])
        holds = sum(len(p['holding']) for p in sc['processes'])
        assert sum(1 for lk in snap.locks if lk.is_held) == holds, name
    assert evaluate(scenario_snapshot('classic')).has_deadlock

from __future__ import annotations
from typing import Collection, List, Optional, Tuple

import networkx as nx

from lockwatch.detection.graph import WaitForGraph, build_wait_for_graph
from lockwatch.detection.models import Cycle, DetectionResult, LedgerSnapshot, Node, NodeKind
from lockwatch.utils.logger import setup_logger

logger = setup_logger(__name__)

MSG_EMPTY = "No locks to analyze."
MSG_SAFE = "No deadlock detected. System is in a safe state."
MSG_DEADLOCK = "Deadlock detected! Found {n} circular wait condition(s)."


def _to_digraph(graph: WaitForGraph) -> nx.DiGraph:
    g = nx.DiGraph()
    g.add_nodes_from(graph.nodes())
    g.add_edges_from((u, v, {"type": t}) for u, v, t in graph.edges())
    return g


def _canonical(ring: List[Node]) -> Tuple[Node, ...]:
    """Rotate so the cycle opens at its smallest user id; closed walk."""
    users = [i for i, n in enumerate(ring) if n.kind == NodeKind.USER]
    start = min(users or range(len(ring)), key=lambda i: (ring[i].kind, ring[i].id))
    rotated = ring[start:] + ring[:start]
    return tuple(rotated) + (rotated[0],)


def find_cycles(graph: WaitForGraph) -> List[Cycle]:
    """
    Every simple cycle of the wait-for graph.

    Strongly connected components are found first (Tarjan, linear); only
    components with more than one node can hold a circular wait, and
    Johnson's enumeration runs on each of those alone. Cycles are rotated
    to open at their smallest user id and sorted, so the result does not
    depend on lock or traversal order.
    """
    g = _to_digraph(graph)
    found = []
    for scc in nx.strongly_connected_components(g):
        if len(scc) < 2:
            continue
        for ring in nx.simple_cycles(g.subgraph(scc)):
            found.append(_canonical(list(ring)))
    found.sort(key=lambda nodes: [(n.kind, n.id) for n in nodes])
    return [Cycle(nodes) for nodes in found]


def detect(graph: WaitForGraph) -> DetectionResult:
    warnings = [str(w) for w in graph.warnings]
    if len(graph) == 0:
        return DetectionResult(False, [], MSG_EMPTY, warnings)
    cycles = find_cycles(graph)
    if cycles:
        for i, c in enumerate(cycles, 1):
            logger.info("cycle %d: %s", i, " -> ".join(f"{n.kind}:{n.id}" for n in c.nodes))
        return DetectionResult(True, cycles, MSG_DEADLOCK.format(n=len(cycles)), warnings)
    return DetectionResult(False, [], MSG_SAFE, warnings)


def evaluate(snapshot: LedgerSnapshot, known_users: Optional[Collection[str]] = None) -> DetectionResult:
    """Snapshot -> DetectionResult. Pure; safe to call concurrently on different snapshots."""
    graph = build_wait_for_graph(snapshot, known_users=known_users)
    result = detect(graph)
    if snapshot.warnings:
        result.warnings = list(snapshot.warnings) + result.warnings
    return result

from __future__ import annotations
from typing import Any, Collection, Dict, List, Optional, Tuple

from lockwatch.detection.errors import MalformedLockRecord
from lockwatch.detection.models import LedgerSnapshot, Lock, Node
from lockwatch.utils import metrics
from lockwatch.utils.logger import setup_logger

logger = setup_logger(__name__)

ALLOCATION = 'allocation'   # resource -> holder
WAIT = 'wait'               # waiter -> resource


class WaitForGraph:
    """
    Bipartite directed graph of users and resources.
    Adjacency keeps insertion order (dict-as-ordered-set) so traversal is
    reproducible for a given snapshot.
    """
    def __init__(self):
        self._adj: Dict[Node, Dict[Node, str]] = {}   # node -> {neighbor: edge type}
        self.labels: Dict[Node, str] = {}
        self.warnings: List[MalformedLockRecord] = []

    def add_node(self, node: Node, label: str = "") -> None:
        if node not in self._adj:
            self._adj[node] = {}
        if label:
            self.labels[node] = label

    def add_edge(self, src: Node, dst: Node, edge_type: str) -> None:
        self.add_node(src)
        self.add_node(dst)
        self._adj[src].setdefault(dst, edge_type)

    def nodes(self) -> List[Node]:
        return list(self._adj)

    def neighbors(self, node: Node) -> List[Node]:
        return list(self._adj.get(node, ()))

    def edges(self) -> List[Tuple[Node, Node, str]]:
        return [(u, v, t) for u, nbrs in self._adj.items() for v, t in nbrs.items()]

    def kind(self, node: Node) -> str:
        return node.kind

    def __contains__(self, node: Node) -> bool:
        return node in self._adj

    def __len__(self) -> int:
        return len(self._adj)

    @property
    def edge_count(self) -> int:
        return sum(len(n) for n in self._adj.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [
                {"kind": n.kind, "id": n.id, "label": self.labels.get(n, n.id)}
                for n in self._adj
            ],
            "edges": [
                {"from": u.to_dict(), "to": v.to_dict(), "type": t}
                for u, v, t in self.edges()
            ],
        }


def _skip(graph: WaitForGraph, lock: Lock, reason: str) -> None:
    warn = MalformedLockRecord(lock.id, reason)
    graph.warnings.append(warn)
    metrics.malformed_locks.inc()
    logger.warning(str(warn))


def build_wait_for_graph(
    snapshot: LedgerSnapshot,
    known_users: Optional[Collection[str]] = None,
) -> WaitForGraph:
    """
    Allocation edge r -> u for every held lock, wait edge u -> r for every
    pending request whose resource is held by someone else. Requests on free
    resources only contribute nodes.
    """
    graph = WaitForGraph()
    titles = snapshot.titles()
    check_resources = snapshot.resources is not None
    users = set(known_users) if known_users is not None else None

    usable: List[Lock] = []
    holders: Dict[str, Lock] = {}   # resource_id -> holding lock

    for lock in snapshot.locks:
        if lock.is_released:
            continue
        if not lock.id or not lock.user_id or not lock.resource_id:
            _skip(graph, lock, "empty identifier")
            continue
        if check_resources and lock.resource_id not in titles:
            _skip(graph, lock, f"unknown resource {lock.resource_id!r}")
            continue
        if users is not None and lock.user_id not in users:
            _skip(graph, lock, f"unknown user {lock.user_id!r}")
            continue
        if lock.is_held:
            cur = holders.get(lock.resource_id)
            if cur is not None:
                # single-holder invariant broken upstream; oldest grant wins
                if (lock.acquired_at, lock.id) < (cur.acquired_at, cur.id):
                    holders[lock.resource_id] = lock
                    usable.remove(cur)
                    _skip(graph, cur, f"second holder of {lock.resource_id!r}")
                else:
                    _skip(graph, lock, f"second holder of {lock.resource_id!r}")
                    continue
            else:
                holders[lock.resource_id] = lock
        usable.append(lock)

    for lock in usable:
        u = Node.user(lock.user_id)
        r = Node.resource(lock.resource_id)
        graph.add_node(u, lock.user_id)
        graph.add_node(r, titles.get(lock.resource_id, lock.resource_id))
        if lock.is_held:
            graph.add_edge(r, u, ALLOCATION)
            continue
        holder = holders.get(lock.resource_id)
        if holder is not None and holder.user_id != lock.user_id:
            graph.add_edge(u, r, WAIT)

    for src, dst, _ in graph.edges():
        assert src in graph and dst in graph, "dangling edge"
        assert src.kind != dst.kind, "edge must join a user and a resource"
    return graph


def wait_edge_count(graph: WaitForGraph) -> int:
    return sum(1 for _, _, t in graph.edges() if t == WAIT)


def holder_index(locks) -> Dict[str, Lock]:
    """resource_id -> active holding lock (first grant wins)."""
    out: Dict[str, Lock] = {}
    for lock in locks:
        if lock.is_held:
            cur = out.get(lock.resource_id)
            if cur is None or (lock.acquired_at, lock.id) < (cur.acquired_at, cur.id):
                out[lock.resource_id] = lock
    return out


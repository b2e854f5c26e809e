from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple


class NodeKind:
    USER = 'user'
    RESOURCE = 'resource'


@dataclass(frozen=True)
class Node:
    """Wait-for graph node: a user or a resource, never a prefixed string."""
    kind: str
    id: str

    @classmethod
    def user(cls, user_id: str) -> "Node":
        return cls(NodeKind.USER, user_id)

    @classmethod
    def resource(cls, resource_id: str) -> "Node":
        return cls(NodeKind.RESOURCE, resource_id)

    @property
    def is_user(self) -> bool:
        return self.kind == NodeKind.USER

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "id": self.id}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Node":
        kind = d.get("kind")
        if kind not in (NodeKind.USER, NodeKind.RESOURCE):
            raise ValueError(f"unknown node kind: {kind!r}")
        return cls(kind, str(d["id"]))


def parse_ts(value: Any) -> Optional[float]:
    """Epoch seconds from a number or an ISO-8601 string (None passes through)."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        s = value.strip()
        try:
            return float(s)
        except ValueError:
            pass
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return datetime.fromisoformat(s).timestamp()
    raise ValueError(f"invalid timestamp: {value!r}")


@dataclass(frozen=True)
class Lock:
    id: str
    user_id: str
    resource_id: str
    requested_at: float
    acquired_at: Optional[float] = None
    released_at: Optional[float] = None

    @property
    def is_released(self) -> bool:
        return self.released_at is not None

    @property
    def is_held(self) -> bool:
        return self.acquired_at is not None and self.released_at is None

    @property
    def is_pending(self) -> bool:
        return self.acquired_at is None and self.released_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "resource_id": self.resource_id,
            "requested_at": self.requested_at,
            "acquired_at": self.acquired_at,
            "released_at": self.released_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Lock":
        # component_id: column name used by the board's lock table
        resource_id = d.get("resource_id", d.get("component_id"))
        if resource_id is None:
            raise KeyError("resource_id")
        requested_at = parse_ts(d.get("requested_at"))
        acquired_at = parse_ts(d.get("acquired_at"))
        if requested_at is None:
            requested_at = acquired_at if acquired_at is not None else 0.0
        return cls(
            id=str(d["id"]),
            user_id=str(d["user_id"]),
            resource_id=str(resource_id),
            requested_at=requested_at,
            acquired_at=acquired_at,
            released_at=parse_ts(d.get("released_at")),
        )


@dataclass(frozen=True)
class Resource:
    id: str
    title: str = ""

    @property
    def label(self) -> str:
        return self.title or self.id

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "title": self.title}


@dataclass(frozen=True)
class LedgerSnapshot:
    """
    Point-in-time view of the ledger.
    resources=None means the caller has no resource context; lock records are
    then not checked against a resource list.
    """
    locks: Tuple[Lock, ...]
    resources: Optional[Tuple[Resource, ...]] = None
    version: int = 0
    taken_at: float = 0.0
    # decode problems found while reading the backing store
    warnings: Tuple[str, ...] = ()

    def titles(self) -> Dict[str, str]:
        return {r.id: r.label for r in (self.resources or ())}

    def active_locks(self) -> List[Lock]:
        return [lk for lk in self.locks if not lk.is_released]


@dataclass(frozen=True)
class UserMetadata:
    idle_time: float = 0.0          # seconds since last lock activity
    session_duration: float = 0.0   # seconds since first lock activity
    role_weight: float = 1.0
    active_lock_count: Optional[int] = None  # None -> counted from the snapshot

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UserMetadata":
        alc = d.get("active_lock_count")
        return cls(
            idle_time=float(d.get("idle_time", 0.0)),
            session_duration=float(d.get("session_duration", 0.0)),
            role_weight=float(d.get("role_weight", 1.0)),
            active_lock_count=None if alc is None else int(alc),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idle_time": self.idle_time,
            "session_duration": self.session_duration,
            "role_weight": self.role_weight,
            "active_lock_count": self.active_lock_count,
        }


@dataclass(frozen=True)
class Cycle:
    """Closed walk [n0, ..., nk, n0] through the wait-for graph."""
    nodes: Tuple[Node, ...]

    def edges(self) -> List[Tuple[Node, Node]]:
        return list(zip(self.nodes, self.nodes[1:]))

    @property
    def key(self) -> FrozenSet[Tuple[Node, Node]]:
        return frozenset(self.edges())

    @property
    def members(self) -> FrozenSet[Node]:
        return frozenset(self.nodes)

    @property
    def users(self) -> List[str]:
        return [n.id for n in self.nodes[:-1] if n.kind == NodeKind.USER]

    @property
    def resources(self) -> List[str]:
        return [n.id for n in self.nodes[:-1] if n.kind == NodeKind.RESOURCE]

    def __len__(self) -> int:
        return max(len(self.nodes) - 1, 0)

    def to_list(self) -> List[Dict[str, str]]:
        return [n.to_dict() for n in self.nodes]

    @classmethod
    def from_list(cls, items: Iterable[Dict[str, Any]]) -> "Cycle":
        return cls(tuple(Node.from_dict(x) for x in items))


@dataclass
class DetectionResult:
    has_deadlock: bool
    cycles: List[Cycle]
    message: str
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasDeadlock": self.has_deadlock,
            "cycles": [c.to_list() for c in self.cycles],
            "message": self.message,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class Recommendation:
    strategy: str
    target_user_id: str
    target_lock_id: str
    resource_id: str
    justification: str
    disruption_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "target_user_id": self.target_user_id,
            "target_lock_id": self.target_lock_id,
            "resource_id": self.resource_id,
            "justification": self.justification,
            "disruption_score": self.disruption_score,
        }


@dataclass
class DetectionReport:
    """What the coordinator publishes after one evaluation cycle."""
    generation: int
    snapshot_version: int
    result: DetectionResult
    recommendations: List[List[Recommendation]]
    evaluated_at: float

    def flat_recommendations(self, user_id: Optional[str] = None) -> List[Recommendation]:
        out: List[Recommendation] = []
        seen = set()
        for ranked in self.recommendations:
            for rec in ranked:
                if user_id is not None and rec.target_user_id != user_id:
                    continue
                if rec.target_lock_id in seen:
                    continue
                seen.add(rec.target_lock_id)
                out.append(rec)
        return out

    def to_dict(self) -> Dict[str, Any]:
        d = self.result.to_dict()
        d.update({
            "generation": self.generation,
            "snapshotVersion": self.snapshot_version,
            "evaluatedAt": self.evaluated_at,
            "recommendations": [[r.to_dict() for r in ranked] for ranked in self.recommendations],
        })
        return d

"""
Static holding/requesting descriptions reduced to lock records.

A "holds" entry becomes an acquired lock, a "requests" entry a pending one.
Holds are laid down before requests so every request sees its resource's
holder in the same snapshot.
"""
from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional, Sequence

from lockwatch.detection.advisor import ResolutionAdvisor
from lockwatch.detection.cycles import evaluate
from lockwatch.detection.models import LedgerSnapshot, Lock, Resource


def locks_from_holdings(processes: Sequence[Mapping[str, Any]], start: float = 0.0) -> List[Lock]:
    locks: List[Lock] = []
    t = start
    for p in processes:
        for res in p.get("holding", ()):
            t += 1.0
            locks.append(Lock(f"{p['id']}:hold:{res}", p["id"], res, requested_at=t, acquired_at=t))
    for p in processes:
        for res in p.get("requesting", ()):
            t += 1.0
            locks.append(Lock(f"{p['id']}:req:{res}", p["id"], res, requested_at=t))
    return locks


def snapshot_from_holdings(processes: Sequence[Mapping[str, Any]]) -> LedgerSnapshot:
    locks = locks_from_holdings(processes)
    names = []
    for lk in locks:
        if lk.resource_id not in names:
            names.append(lk.resource_id)
    return LedgerSnapshot(locks=tuple(locks), resources=tuple(Resource(r, r) for r in names))


EXAMPLE_SCENARIOS: Dict[str, Dict[str, Any]] = {
    "classic": {
        "description": "Two users competing for two components",
        "processes": [
            {"id": "P1", "holding": ["R1"], "requesting": ["R2"]},
            {"id": "P2", "holding": ["R2"], "requesting": ["R1"]},
        ],
    },
    "three_way": {
        "description": "Three users in a circular wait",
        "processes": [
            {"id": "P1", "holding": ["R1"], "requesting": ["R2"]},
            {"id": "P2", "holding": ["R2"], "requesting": ["R3"]},
            {"id": "P3", "holding": ["R3"], "requesting": ["R1"]},
        ],
    },
    "safe_state": {
        "description": "No circular dependencies",
        "processes": [
            {"id": "P1", "holding": ["R1"], "requesting": ["R2"]},
            {"id": "P2", "holding": ["R3"], "requesting": ["R4"]},
            {"id": "P3", "holding": ["R2"], "requesting": []},
        ],
    },
    "complex": {
        "description": "Multiple users with mixed dependencies",
        "processes": [
            {"id": "P1", "holding": ["R1", "R2"], "requesting": ["R3"]},
            {"id": "P2", "holding": ["R3"], "requesting": ["R4"]},
            {"id": "P3", "holding": ["R4"], "requesting": ["R1"]},
            {"id": "P4", "holding": ["R5"], "requesting": []},
        ],
    },
}


def scenario_snapshot(name: str) -> LedgerSnapshot:
    return snapshot_from_holdings(EXAMPLE_SCENARIOS[name]["processes"])


def check_processes(processes: Any) -> List[Mapping[str, Any]]:
    """Reject shapes that cannot be reduced to lock records."""
    if not isinstance(processes, list) or not processes:
        raise ValueError("processes must be a non-empty list")
    for i, p in enumerate(processes):
        if not isinstance(p, Mapping) or not isinstance(p.get("id"), str) or not p["id"]:
            raise ValueError(f"process #{i} needs a string id")
        for key in ("holding", "requesting"):
            items = p.get(key, [])
            if not isinstance(items, list) or not all(isinstance(r, str) and r for r in items):
                raise ValueError(f"process {p['id']!r}: {key} must be a list of resource ids")
    return processes


def scenario_report(processes: Sequence[Mapping[str, Any]],
                    advisor: Optional[ResolutionAdvisor] = None) -> Dict[str, Any]:
    """Detection result for a holdings description, with ranked releases per cycle."""
    snap = snapshot_from_holdings(check_processes(processes))
    result = evaluate(snap)
    ranked = (advisor or ResolutionAdvisor()).recommend(result.cycles, snap.locks, None, snap.resources)
    out = result.to_dict()
    out["recommendations"] = [[r.to_dict() for r in recs] for recs in ranked]
    return out


def list_scenarios() -> List[Dict[str, Any]]:
    return [{"name": name, **sc} for name, sc in EXAMPLE_SCENARIOS.items()]

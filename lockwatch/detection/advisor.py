from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from lockwatch.detection.errors import AdvisorNoEligibleTarget
from lockwatch.detection.graph import holder_index
from lockwatch.detection.models import Cycle, Lock, NodeKind, Recommendation, Resource, UserMetadata
from lockwatch.utils.config import Settings
from lockwatch.utils.logger import setup_logger

logger = setup_logger(__name__)

FORCE_RELEASE = 'force_release'


@dataclass(frozen=True)
class ScoringWeights:
    role: float = 10.0
    idle: float = 5.0
    session: float = 1.0
    active_locks: float = 2.0
    idle_scale: float = 60.0        # seconds; idle minutes drive the decay
    session_scale: float = 3600.0   # seconds; session hours add linearly

    def __post_init__(self):
        for name in ("role", "idle", "session", "active_locks"):
            if getattr(self, name) < 0:
                raise ValueError(f"weight {name} must be >= 0")
        if self.idle_scale <= 0 or self.session_scale <= 0:
            raise ValueError("scales must be > 0")

    @classmethod
    def from_settings(cls, cfg: Settings) -> "ScoringWeights":
        return cls(
            role=cfg.weight_role,
            idle=cfg.weight_idle,
            session=cfg.weight_session,
            active_locks=cfg.weight_active_locks,
        )


class ResolutionAdvisor:
    """
    Ranks the locks whose release breaks a circular wait.
    Lower disruption score = cheaper to preempt. Never releases anything itself.
    """
    def __init__(self, weights: Optional[ScoringWeights] = None, exempt_users: Iterable[str] = ()):
        self.weights = weights or ScoringWeights()
        self.exempt_users = frozenset(exempt_users)

    def disruption_score(self, meta: UserMetadata, active_lock_count: Optional[int] = None) -> float:
        w = self.weights
        count = meta.active_lock_count if meta.active_lock_count is not None else (active_lock_count or 0)
        idle = max(meta.idle_time, 0.0)
        session = max(meta.session_duration, 0.0)
        return (
            w.role * meta.role_weight
            + w.idle / (1.0 + idle / w.idle_scale)
            + w.session * session / w.session_scale
            + w.active_locks * count
        )

    def rank_cycle(
        self,
        cycle: Cycle,
        locks: Sequence[Lock],
        metadata: Optional[Mapping[str, UserMetadata]] = None,
        titles: Optional[Mapping[str, str]] = None,
        index: int = 0,
    ) -> List[Recommendation]:
        metadata = metadata or {}
        titles = titles or {}
        holders = holder_index(locks)
        held_count: Dict[str, int] = {}
        for lk in holders.values():
            held_count[lk.user_id] = held_count.get(lk.user_id, 0) + 1

        scored = []
        seen = set()
        for src, dst in cycle.edges():
            # allocation edges only: resource -> holder
            if src.kind != NodeKind.RESOURCE or dst.kind != NodeKind.USER:
                continue
            lock = holders.get(src.id)
            if lock is None or lock.user_id != dst.id or lock.id in seen:
                continue
            if lock.user_id in self.exempt_users:
                continue
            seen.add(lock.id)
            meta = metadata.get(lock.user_id) or UserMetadata()
            count = meta.active_lock_count if meta.active_lock_count is not None else held_count.get(lock.user_id, 0)
            score = self.disruption_score(meta, count)
            title = titles.get(lock.resource_id, lock.resource_id)
            why = (
                f'Release {lock.user_id}\'s lock on "{title}": idle {meta.idle_time:.0f}s, '
                f'session {meta.session_duration:.0f}s, {count} active lock(s), '
                f'role weight {meta.role_weight:g}'
            )
            scored.append((score, lock.acquired_at, lock.id, Recommendation(
                strategy=FORCE_RELEASE,
                target_user_id=lock.user_id,
                target_lock_id=lock.id,
                resource_id=lock.resource_id,
                justification=why,
                disruption_score=round(score, 6),
            )))

        if not scored:
            logger.warning(str(AdvisorNoEligibleTarget(index)))
            return []
        # ascending score, then the oldest grant, then id for a stable order
        scored.sort(key=lambda x: (x[0], x[1], x[2]))
        return [x[3] for x in scored]

    def recommend(
        self,
        cycles: Sequence[Cycle],
        locks: Sequence[Lock],
        metadata: Optional[Mapping[str, UserMetadata]] = None,
        resources: Optional[Iterable[Resource]] = None,
    ) -> List[List[Recommendation]]:
        """One ranked list per cycle, in the order the cycles were given."""
        titles = {r.id: r.label for r in (resources or ())}
        return [self.rank_cycle(c, locks, metadata, titles, i) for i, c in enumerate(cycles, 1)]

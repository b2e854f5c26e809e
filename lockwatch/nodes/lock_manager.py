from __future__ import annotations
import time
import uuid
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from lockwatch.detection.errors import LockNotFound
from lockwatch.detection.models import LedgerSnapshot, Lock, Resource, UserMetadata
from lockwatch.utils import metrics
from lockwatch.utils.logger import setup_logger

logger = setup_logger(__name__)

OnChange = Callable[[], None]


def _new_lock_id() -> str:
    return uuid.uuid4().hex


# --- planning: pure functions shared by every ledger backend ---

def plan_acquire(
    locks: Mapping[str, Lock], resource_id: str, user_id: str, now: float, lock_id: Optional[str] = None
) -> Tuple[Lock, List[Lock]]:
    """
    Return (lock, changed). Free resource -> granted at once; held resource ->
    pending request. A user's existing unreleased lock on the resource is
    returned unchanged.
    """
    holder: Optional[Lock] = None
    for lk in locks.values():
        if lk.resource_id != resource_id or lk.is_released:
            continue
        if lk.user_id == user_id:
            return lk, []
        if lk.is_held:
            holder = lk
    lock = Lock(
        id=lock_id or _new_lock_id(),
        user_id=user_id,
        resource_id=resource_id,
        requested_at=now,
        acquired_at=None if holder is not None else now,
    )
    return lock, [lock]


def plan_release(locks: Mapping[str, Lock], lock_id: str, now: float) -> Tuple[Lock, List[Lock]]:
    """
    Mark a lock released. If it was held, the oldest pending request on the same
    resource is granted. Releasing twice is a no-op.
    """
    lock = locks.get(lock_id)
    if lock is None:
        raise LockNotFound(lock_id)
    if lock.is_released:
        return lock, []
    released = replace(lock, released_at=now)
    changed = [released]
    if lock.is_held:
        waiting = sorted(
            (lk for lk in locks.values() if lk.resource_id == lock.resource_id and lk.is_pending),
            key=lambda lk: (lk.requested_at, lk.id),
        )
        if waiting:
            changed.append(replace(waiting[0], acquired_at=now))
    return released, changed


class LockLedger:
    """
    In-memory reference ledger: exclusive locks with timestamped records.
    Records are never deleted; release is terminal.
    """
    def __init__(self, clock: Callable[[], float] = time.time, roles: Optional[Mapping[str, float]] = None):
        self.clock = clock
        self.locks: Dict[str, Lock] = {}            # lock_id -> record (history included)
        self.resources: Dict[str, Resource] = {}    # resource_id -> resource
        self.roles: Dict[str, float] = dict(roles or {})
        self.first_seen: Dict[str, float] = {}
        self.last_seen: Dict[str, float] = {}
        self._version = 0
        self._listeners: List[OnChange] = []

    def subscribe(self, cb: OnChange):
        self._listeners.append(cb)

    def _emit(self):
        self._version += 1
        for cb in list(self._listeners):
            try:
                cb()
            except Exception:
                logger.exception("ledger listener failed")

    def _touch(self, user_id: str, now: float):
        self.first_seen.setdefault(user_id, now)
        self.last_seen[user_id] = now

    def _apply(self, changed: Iterable[Lock]):
        for lk in changed:
            prev = self.locks.get(lk.id)
            if lk.is_held and (prev is None or not prev.is_held):
                metrics.locks_granted.inc()
            self.locks[lk.id] = lk
        metrics.locks_waiting.set(sum(1 for lk in self.locks.values() if lk.is_pending))

    # --- mutations ---
    def register_resource(self, resource_id: str, title: str = "") -> Resource:
        res = Resource(resource_id, title or resource_id)
        if self.resources.get(resource_id) != res:
            self.resources[resource_id] = res
            self._emit()
        return res

    def set_role(self, user_id: str, weight: float):
        self.roles[user_id] = float(weight)

    def acquire(self, resource_id: str, user_id: str) -> Lock:
        if resource_id not in self.resources:
            self.resources[resource_id] = Resource(resource_id, resource_id)
        now = self.clock()
        lock, changed = plan_acquire(self.locks, resource_id, user_id, now)
        self._touch(user_id, now)
        if changed:
            self._apply(changed)
            logger.info("%s %s on %s by %s", "granted" if lock.is_held else "queued",
                        lock.id, resource_id, user_id)
            self._emit()
        return lock

    def release(self, lock_id: str) -> Lock:
        now = self.clock()
        lock, changed = plan_release(self.locks, lock_id, now)
        if changed:
            self._touch(lock.user_id, now)
            self._apply(changed)
            logger.info("released %s on %s by %s", lock.id, lock.resource_id, lock.user_id)
            self._emit()
        return lock

    def release_resource(self, resource_id: str, user_id: str) -> Lock:
        for lk in self.locks.values():
            if lk.resource_id == resource_id and lk.user_id == user_id and not lk.is_released:
                return self.release(lk.id)
        raise LockNotFound(f"{user_id}@{resource_id}")

    # --- reads ---
    def version(self) -> int:
        return self._version

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            locks=tuple(lk for lk in self.locks.values() if not lk.is_released),
            resources=tuple(self.resources.values()),
            version=self._version,
            taken_at=self.clock(),
        )

    def user_metadata(self, user_ids: Iterable[str]) -> Dict[str, UserMetadata]:
        now = self.clock()
        out: Dict[str, UserMetadata] = {}
        for uid in user_ids:
            held = sum(1 for lk in self.locks.values() if lk.user_id == uid and lk.is_held)
            out[uid] = UserMetadata(
                idle_time=max(0.0, now - self.last_seen.get(uid, now)),
                session_duration=max(0.0, now - self.first_seen.get(uid, now)),
                role_weight=self.roles.get(uid, 1.0),
                active_lock_count=held,
            )
        return out

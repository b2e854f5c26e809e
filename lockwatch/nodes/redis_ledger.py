from __future__ import annotations
import json
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import WatchError

from lockwatch.detection.errors import LockNotFound
from lockwatch.detection.models import LedgerSnapshot, Lock, Resource, UserMetadata
from lockwatch.nodes.lock_manager import plan_acquire, plan_release
from lockwatch.utils import metrics
from lockwatch.utils.logger import setup_logger

logger = setup_logger(__name__)


class RedisLedger:
    """
    Redis key scheme per namespace:
      - locks (HASH):     lw:{ns}:locks       field = lock_id, value = JSON lock record
      - resources (HASH): lw:{ns}:resources   field = resource_id, value = title
      - activity (HASH):  lw:{ns}:activity    field = user_id, value = JSON {"first": ts, "last": ts}
      - roles (HASH):     lw:{ns}:roles       field = user_id, value = role weight
      - version (STRING): lw:{ns}:version     INCR on every mutation
      - channel:          lw:{ns}:changes     PUBLISH <version> after every mutation

    Snapshots are read in one MULTI/EXEC so locks, resources and version belong
    to the same point in time. Mutations WATCH the locks hash and retry on
    conflict.
    """

    def __init__(self, redis: Redis, namespace: str = "default",
                 clock: Callable[[], float] = time.time, max_retries: int = 16):
        self.redis = redis
        self.ns = namespace
        self.clock = clock
        self.max_retries = max_retries

    # --- keys ---
    @property
    def locks_key(self) -> str:
        return f"lw:{self.ns}:locks"

    @property
    def resources_key(self) -> str:
        return f"lw:{self.ns}:resources"

    @property
    def activity_key(self) -> str:
        return f"lw:{self.ns}:activity"

    @property
    def roles_key(self) -> str:
        return f"lw:{self.ns}:roles"

    @property
    def version_key(self) -> str:
        return f"lw:{self.ns}:version"

    @property
    def channel(self) -> str:
        return f"lw:{self.ns}:changes"

    # --- codec ---
    @staticmethod
    def _decode_locks(raw: Dict[str, str]) -> Tuple[Dict[str, Lock], List[str]]:
        locks: Dict[str, Lock] = {}
        bad: List[str] = []
        for field, val in raw.items():
            try:
                lock = Lock.from_dict(json.loads(val))
            except (ValueError, KeyError, TypeError) as e:
                # corrupt entry: keep it out of the snapshot, report it
                bad.append(f"lock {field!r} skipped: undecodable record ({e.__class__.__name__})")
                continue
            locks[lock.id] = lock
        return locks, bad

    @staticmethod
    def _encode(lock: Lock) -> str:
        return json.dumps(lock.to_dict(), sort_keys=True)

    # --- reads ---
    async def version(self) -> int:
        v = await self.redis.get(self.version_key)
        return int(v or 0)

    async def snapshot(self) -> LedgerSnapshot:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hgetall(self.locks_key)
            pipe.hgetall(self.resources_key)
            pipe.get(self.version_key)
            raw_locks, raw_res, ver = await pipe.execute()

        locks, bad = self._decode_locks(raw_locks or {})
        for w in bad:
            metrics.malformed_locks.inc()
            logger.warning(w)
        return LedgerSnapshot(
            locks=tuple(lk for lk in locks.values() if not lk.is_released),
            resources=tuple(Resource(rid, title) for rid, title in (raw_res or {}).items()),
            version=int(ver or 0),
            taken_at=self.clock(),
            warnings=tuple(bad),
        )

    async def user_metadata(self, user_ids: Iterable[str]) -> Dict[str, UserMetadata]:
        ids = list(user_ids)
        if not ids:
            return {}
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hgetall(self.activity_key)
            pipe.hgetall(self.roles_key)
            pipe.hgetall(self.locks_key)
            activity, roles, raw_locks = await pipe.execute()
        locks, _ = self._decode_locks(raw_locks or {})
        now = self.clock()
        out: Dict[str, UserMetadata] = {}
        for uid in ids:
            act = json.loads(activity[uid]) if activity and uid in activity else {}
            out[uid] = UserMetadata(
                idle_time=max(0.0, now - float(act.get("last", now))),
                session_duration=max(0.0, now - float(act.get("first", now))),
                role_weight=float((roles or {}).get(uid, 1.0)),
                active_lock_count=sum(1 for lk in locks.values() if lk.user_id == uid and lk.is_held),
            )
        return out

    # --- mutations ---
    async def register_resource(self, resource_id: str, title: str = "") -> Resource:
        res = Resource(resource_id, title or resource_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.resources_key, resource_id, res.title)
            pipe.incr(self.version_key)
            _, ver = await pipe.execute()
        await self.redis.publish(self.channel, str(ver))
        return res

    async def set_role(self, user_id: str, weight: float) -> None:
        await self.redis.hset(self.roles_key, user_id, str(float(weight)))

    async def _mutate(self, plan: Callable[[Dict[str, Lock], float], Tuple[Lock, List[Lock]]],
                      user_id: Optional[str] = None,
                      resource: Optional[Resource] = None) -> Lock:
        """Optimistic transaction: WATCH locks, plan in Python, MULTI/EXEC the writes."""
        async with self.redis.pipeline(transaction=True) as pipe:
            for _ in range(self.max_retries):
                try:
                    await pipe.watch(self.locks_key)
                    raw = await pipe.hgetall(self.locks_key)
                    locks, _ = self._decode_locks(raw or {})
                    now = self.clock()
                    lock, changed = plan(locks, now)
                    act_user = user_id or lock.user_id
                    act_raw = await pipe.hget(self.activity_key, act_user)
                    act: Dict[str, Any] = json.loads(act_raw) if act_raw else {}
                    if not changed:
                        return lock
                    pipe.multi()
                    for lk in changed:
                        pipe.hset(self.locks_key, lk.id, self._encode(lk))
                    if resource is not None:
                        pipe.hsetnx(self.resources_key, resource.id, resource.title)
                    pipe.hset(self.activity_key, act_user,
                              json.dumps({"first": act.get("first", now), "last": now}))
                    pipe.incr(self.version_key)
                    results = await pipe.execute()
                    break
                except WatchError:
                    logger.debug("ledger write conflict, retrying")
                    continue
            else:
                raise RuntimeError(f"ledger write kept conflicting after {self.max_retries} attempts")

        locks.update((lk.id, lk) for lk in changed)
        metrics.locks_waiting.set(sum(1 for lk in locks.values() if lk.is_pending))
        for lk in changed:
            if lk.is_held:
                metrics.locks_granted.inc()
        await self.redis.publish(self.channel, str(results[-1]))
        return lock

    async def acquire(self, resource_id: str, user_id: str) -> Lock:
        lock = await self._mutate(
            lambda locks, now: plan_acquire(locks, resource_id, user_id, now),
            user_id=user_id,
            resource=Resource(resource_id, resource_id),
        )
        logger.info("%s %s on %s by %s", "granted" if lock.is_held else "queued",
                    lock.id, resource_id, user_id)
        return lock

    async def release(self, lock_id: str) -> Lock:
        lock = await self._mutate(lambda locks, now: plan_release(locks, lock_id, now))
        logger.info("released %s on %s by %s", lock.id, lock.resource_id, lock.user_id)
        return lock

    async def release_resource(self, resource_id: str, user_id: str) -> Lock:
        raw = await self.redis.hgetall(self.locks_key)
        locks, _ = self._decode_locks(raw or {})
        for lk in locks.values():
            if lk.resource_id == resource_id and lk.user_id == user_id and not lk.is_released:
                return await self.release(lk.id)
        raise LockNotFound(f"{user_id}@{resource_id}")

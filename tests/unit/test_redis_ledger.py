import json

import pytest
from redis.exceptions import WatchError

from lockwatch.detection.errors import LockNotFound
from lockwatch.nodes.redis_ledger import RedisLedger
from lockwatch.utils import metrics


class FakeRedis:
    """Just enough of redis.asyncio for the ledger: hashes, strings, WATCH, pub/sub."""
    def __init__(self):
        self.data = {}
        self.touched = {}
        self.published = []
        self.on_watch_read = None

    def _write(self, key):
        self.touched[key] = self.touched.get(key, 0) + 1

    # commands shared by the client and pipelines
    def _hgetall(self, key):
        return dict(self.data.get(key, {}))

    def _hget(self, key, field):
        return self.data.get(key, {}).get(field)

    def _hset(self, key, field, value):
        h = self.data.setdefault(key, {})
        new = field not in h
        h[field] = value
        self._write(key)
        return int(new)

    def _hsetnx(self, key, field, value):
        h = self.data.setdefault(key, {})
        if field in h:
            return 0
        return self._hset(key, field, value)

    def _get(self, key):
        return self.data.get(key)

    def _incr(self, key):
        v = int(self.data.get(key, 0)) + 1
        self.data[key] = str(v)
        self._write(key)
        return v

    async def get(self, key):
        return self._get(key)

    async def hgetall(self, key):
        return self._hgetall(key)

    async def hset(self, key, field, value):
        return self._hset(key, field, value)

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, redis: FakeRedis):
        self.r = redis
        self.queue = []
        self.watched = {}
        self.immediate = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.reset()

    def reset(self):
        self.queue = []
        self.watched = {}
        self.immediate = False

    async def watch(self, *keys):
        self.immediate = True
        for k in keys:
            self.watched[k] = self.r.touched.get(k, 0)

    def multi(self):
        self.immediate = False

    def _cmd(self, name, *args):
        fn = getattr(self.r, "_" + name)
        if self.immediate:
            async def run():
                res = fn(*args)
                if name == "hgetall" and self.r.on_watch_read is not None:
                    hook, self.r.on_watch_read = self.r.on_watch_read, None
                    hook()
                return res
            return run()
        self.queue.append((fn, args))
        return self

    def hgetall(self, key):
        return self._cmd("hgetall", key)

    def hget(self, key, field):
        return self._cmd("hget", key, field)

    def hset(self, key, field, value):
        return self._cmd("hset", key, field, value)

    def hsetnx(self, key, field, value):
        return self._cmd("hsetnx", key, field, value)

    def get(self, key):
        return self._cmd("get", key)

    def incr(self, key):
        return self._cmd("incr", key)

    async def execute(self):
        try:
            for k, seen in self.watched.items():
                if self.r.touched.get(k, 0) != seen:
                    raise WatchError("watched key changed")
            return [fn(*args) for fn, args in self.queue]
        finally:
            self.reset()


class FakeClock:
    def __init__(self, t=100.0):
        self.t = t

    def __call__(self):
        return self.t


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(redis, clock):
    return RedisLedger(redis, namespace="t", clock=clock)


@pytest.mark.asyncio
async def test_acquire_grants_then_queues(ledger, redis):
    first = await ledger.acquire('R1', 'U1')
    second = await ledger.acquire('R1', 'U2')
    assert first.is_held and second.is_pending
    assert await ledger.version() == 2
    assert [m for _, m in redis.published] == ['1', '2']
    assert redis.published[0][0] == 'lw:t:changes'


@pytest.mark.asyncio
async def test_snapshot_is_consistent_and_skips_released(ledger, clock):
    a = await ledger.acquire('R1', 'U1')
    await ledger.acquire('R1', 'U2')
    clock.t += 5
    await ledger.release(a.id)
    snap = await ledger.snapshot()
    assert snap.version == 3
    assert [(lk.user_id, lk.is_held) for lk in snap.locks] == [('U2', True)]
    assert snap.titles() == {'R1': 'R1'}


@pytest.mark.asyncio
async def test_reacquire_is_a_noop(ledger, redis):
    first = await ledger.acquire('R1', 'U1')
    again = await ledger.acquire('R1', 'U1')
    assert again == first
    assert await ledger.version() == 1
    assert len(redis.published) == 1


@pytest.mark.asyncio
async def test_release_unknown(ledger):
    with pytest.raises(LockNotFound):
        await ledger.release('missing')
    with pytest.raises(LockNotFound):
        await ledger.release_resource('R1', 'U1')


@pytest.mark.asyncio
async def test_release_by_resource(ledger):
    await ledger.acquire('R1', 'U1')
    released = await ledger.release_resource('R1', 'U1')
    assert released.is_released
    assert (await ledger.snapshot()).locks == ()


@pytest.mark.asyncio
async def test_write_conflict_is_retried(ledger, redis):
    await ledger.acquire('R1', 'U1')

    def concurrent_writer():
        redis._hset(ledger.locks_key, 'other', json.dumps({
            "id": "other", "user_id": "U9", "resource_id": "R2", "requested_at": 1.0, "acquired_at": 1.0,
        }))
    redis.on_watch_read = concurrent_writer

    lock = await ledger.acquire('R2', 'U2')
    assert lock.is_pending                 # planned against the concurrent holder on retry
    held = {lk.user_id for lk in (await ledger.snapshot()).locks if lk.is_held}
    assert held == {'U1', 'U9'}


@pytest.mark.asyncio
async def test_corrupt_record_reported_not_fatal(ledger, redis):
    await ledger.acquire('R1', 'U1')
    redis._hset(ledger.locks_key, 'junk', '{not json')
    snap = await ledger.snapshot()
    assert len(snap.locks) == 1
    assert any("'junk'" in w for w in snap.warnings)


@pytest.mark.asyncio
async def test_user_metadata(ledger, redis, clock):
    await ledger.acquire('R1', 'U1')
    clock.t += 30
    await ledger.acquire('R2', 'U1')
    await ledger.set_role('U1', 4)
    clock.t += 10
    meta = await ledger.user_metadata(['U1', 'nobody'])
    assert meta['U1'].idle_time == 10
    assert meta['U1'].session_duration == 40
    assert meta['U1'].role_weight == 4.0
    assert meta['U1'].active_lock_count == 2
    assert meta['nobody'].idle_time == 0
    assert await ledger.user_metadata([]) == {}


@pytest.mark.asyncio
async def test_register_resource_bumps_version(ledger, redis):
    res = await ledger.register_resource('R1', 'Landing page')
    assert res.label == 'Landing page'
    snap = await ledger.snapshot()
    assert snap.titles() == {'R1': 'Landing page'}
    assert snap.version == 1
    await ledger.acquire('R1', 'U1')            # hsetnx keeps the title
    assert (await ledger.snapshot()).titles() == {'R1': 'Landing page'}


@pytest.mark.asyncio
async def test_waiting_gauge_tracks_pending_requests(ledger):
    a = await ledger.acquire('R1', 'U1')
    await ledger.acquire('R1', 'U2')
    await ledger.acquire('R1', 'U3')
    assert metrics.locks_waiting._value.get() == 2
    await ledger.release(a.id)
    assert metrics.locks_waiting._value.get() == 1

from __future__ import annotations
import asyncio
import inspect
from typing import Callable, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from lockwatch.utils.logger import setup_logger

logger = setup_logger(__name__)

OnChange = Callable[[], None]


class _Feed:
    """Shared start/stop lifecycle and listener fan-out."""
    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._listeners: List[OnChange] = []
        self.events = 0

    def subscribe(self, cb: OnChange):
        self._listeners.append(cb)

    def _emit(self):
        self.events += 1
        for cb in list(self._listeners):
            try:
                cb()
            except Exception:
                logger.exception("change listener failed")

    async def start(self):
        self._stop.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        self._stop.set()
        if self._task:
            await self._task
            self._task = None

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped; True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run(self):
        raise NotImplementedError


class LedgerPoller(_Feed):
    """
    Poll-based change channel:
    - read ledger.version() every `interval` seconds
    - emit when the version moved
    """
    def __init__(self, ledger, interval: float = 1.0):
        super().__init__()
        self.ledger = ledger
        self.interval = interval
        self._last: Optional[int] = None

    async def _poll_once(self):
        v = self.ledger.version()
        if inspect.isawaitable(v):
            v = await v
        if v != self._last:
            self._last = v
            self._emit()

    async def _run(self):
        while not self._stop.is_set():
            try:
                await self._poll_once()
            except (RedisError, OSError) as e:
                # ledger briefly unreachable: keep polling
                logger.warning("ledger poll failed: %r", e)
            if await self._sleep(self.interval):
                break


class RedisChangeFeed(_Feed):
    """Push-based change channel: one emit per message on the ledger's pub/sub channel."""
    def __init__(self, redis: Redis, channel: str, reconnect_delay: float = 1.0):
        super().__init__()
        self.redis = redis
        self.channel = channel
        self.reconnect_delay = reconnect_delay

    async def _run(self):
        while not self._stop.is_set():
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                while not self._stop.is_set():
                    msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if msg is not None:
                        self._emit()
            except (RedisError, OSError) as e:
                logger.warning("change feed disconnected: %r", e)
                if await self._sleep(self.reconnect_delay):
                    break
            finally:
                await pubsub.aclose()

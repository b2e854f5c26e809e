from __future__ import annotations
import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from lockwatch.detection.advisor import ResolutionAdvisor
from lockwatch.detection.cycles import detect
from lockwatch.detection.errors import StaleEvaluation
from lockwatch.detection.graph import build_wait_for_graph, wait_edge_count
from lockwatch.detection.models import DetectionReport, LedgerSnapshot, UserMetadata
from lockwatch.utils import metrics
from lockwatch.utils.logger import setup_logger

logger = setup_logger(__name__)

Listener = Callable[[DetectionReport], Any]
MetadataProvider = Callable[[Iterable[str]], Union[Dict[str, UserMetadata], Awaitable[Dict[str, UserMetadata]]]]


async def maybe_await(x):
    return await x if inspect.isawaitable(x) else x


class CoordinatorState:
    IDLE = 'idle'
    EVALUATING = 'evaluating'


class DetectionCoordinator:
    """
    Runs snapshot -> graph -> cycles -> advice whenever the ledger changes.

    Notifications arriving mid-evaluation are coalesced: the running evaluation
    is abandoned at its next checkpoint and exactly one more evaluation runs
    against the latest snapshot. At most `max_discards` evaluations in a row
    are abandoned; the next one runs to completion and is published even if
    the ledger moved again, so a steady stream of changes cannot starve
    publication. Reports are published in generation order.
    """
    def __init__(
        self,
        ledger,
        advisor: Optional[ResolutionAdvisor] = None,
        metadata_provider: Optional[MetadataProvider] = None,
        max_discards: int = 1,
    ):
        self.ledger = ledger
        self.advisor = advisor or ResolutionAdvisor()
        if metadata_provider is None:
            metadata_provider = getattr(ledger, "user_metadata", None)
        self.metadata_provider = metadata_provider
        self.max_discards = max(0, max_discards)
        self.state = CoordinatorState.IDLE
        self.latest: Optional[DetectionReport] = None
        self.last_error: Optional[BaseException] = None
        self.published = 0
        self.discarded = 0
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._listeners: List[Listener] = []
        self._listener_tasks: Set[asyncio.Future] = set()

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, cb: Listener):
        self._listeners.append(cb)

    def notify(self) -> None:
        """Ledger-changed signal. Safe to call from sync code running on the loop."""
        self._generation += 1
        if self.state == CoordinatorState.EVALUATING:
            return
        self.state = CoordinatorState.EVALUATING
        self._idle.clear()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def evaluate_now(self) -> Optional[DetectionReport]:
        self.notify()
        await self.wait_idle()
        return self.latest

    async def close(self) -> None:
        if self._task and not self._task.done():
            await self._task
        if self._listener_tasks:
            await asyncio.gather(*list(self._listener_tasks), return_exceptions=True)

    # --- internals ---
    def _check_current(self, generation: int, final: bool) -> None:
        if not final and generation != self._generation:
            raise StaleEvaluation(generation, self._generation)

    async def _run(self):
        in_row = 0
        try:
            while True:
                generation = self._generation
                try:
                    report = await self._evaluate(generation, final=in_row >= self.max_discards)
                except StaleEvaluation as e:
                    in_row += 1
                    self.discarded += 1
                    metrics.evaluations_discarded.inc()
                    logger.debug(str(e))
                    continue
                except Exception as e:
                    self.last_error = e
                    logger.exception("evaluation %d failed", generation)
                    if generation != self._generation:
                        in_row = 0
                        continue
                    break
                in_row = 0
                self._publish(report)
                if generation == self._generation:
                    break
        finally:
            self.state = CoordinatorState.IDLE
            self._idle.set()

    async def _evaluate(self, generation: int, final: bool = False) -> DetectionReport:
        t0 = time.perf_counter()
        snapshot: LedgerSnapshot = await maybe_await(self.ledger.snapshot())
        self._check_current(generation, final)

        graph = build_wait_for_graph(snapshot)
        result = detect(graph)
        if snapshot.warnings:
            result.warnings = list(snapshot.warnings) + result.warnings
        self._check_current(generation, final)

        recommendations = []
        if result.has_deadlock:
            users = sorted({u for c in result.cycles for u in c.users})
            metadata: Dict[str, UserMetadata] = {}
            if self.metadata_provider is not None:
                metadata = await maybe_await(self.metadata_provider(users))
                self._check_current(generation, final)
            recommendations = self.advisor.recommend(
                result.cycles, snapshot.locks, metadata, snapshot.resources
            )

        metrics.evaluation_latency.observe(time.perf_counter() - t0)
        logger.debug("evaluation %d: %d nodes, %d wait edges, %d cycles",
                     generation, len(graph), wait_edge_count(graph), len(result.cycles))
        return DetectionReport(
            generation=generation,
            snapshot_version=snapshot.version,
            result=result,
            recommendations=recommendations,
            evaluated_at=time.time(),
        )

    def _publish(self, report: DetectionReport):
        self.latest = report
        self.published += 1
        self.last_error = None
        metrics.evaluations.inc()
        metrics.deadlock_cycles.set(len(report.result.cycles))
        if report.result.has_deadlock:
            logger.warning(report.result.message)
        for cb in list(self._listeners):
            try:
                res = cb(report)
                if inspect.isawaitable(res):
                    task = asyncio.ensure_future(res)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception:
                logger.exception("report listener failed")

    def _listener_done(self, task: asyncio.Future):
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("report listener failed", exc_info=exc)

from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from aiohttp import web

from lockwatch.detection.advisor import ResolutionAdvisor
from lockwatch.detection.cycles import evaluate
from lockwatch.detection.errors import LockwatchError
from lockwatch.detection.models import Cycle, LedgerSnapshot, Lock, Resource, UserMetadata
from lockwatch.detection.scenarios import EXAMPLE_SCENARIOS, scenario_report
from lockwatch.utils.logger import setup_logger

logger = setup_logger(__name__)

Json = Dict[str, Any]
Handler = Union[Callable[..., Any], Callable[..., Awaitable[Any]]]


class JsonRpcRegistry:
    """
    Handler registry for the /rpc endpoint.
    Handlers take keyword params, may be sync or async; the return value is JSON-encoded.
    """
    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, method: str, func: Handler):
        if not callable(func):
            raise TypeError("handler must be callable")
        self._handlers[method] = func

    @property
    def methods(self) -> List[str]:
        return sorted(self._handlers)

    async def handle(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except ValueError:
            return web.json_response({"ok": False, "error": "invalid_json"}, status=400)
        if not isinstance(data, dict):
            return web.json_response({"ok": False, "error": "invalid_json"}, status=400)

        method = data.get("method")
        params = data.get("params", {}) or {}
        if not isinstance(params, dict):
            return web.json_response({"ok": False, "error": "params_must_be_object"}, status=400)

        fn = self._handlers.get(method)
        if not fn:
            return web.json_response({"ok": False, "error": f"unknown_method:{method}"}, status=404)

        try:
            if asyncio.iscoroutinefunction(fn):
                result = await fn(**params)
            else:
                result = fn(**params)
            return web.json_response({"ok": True, "result": result})
        except (TypeError, ValueError, KeyError) as e:
            # argument mismatch or undecodable payload
            return web.json_response({"ok": False, "error": f"bad_params:{e}"}, status=400)
        except LockwatchError as e:
            return web.json_response({"ok": False, "error": f"{e.__class__.__name__}:{e}"}, status=409)


# --- kernel RPC methods ---

def _decode_locks(raw: List[Json]):
    locks: List[Lock] = []
    warnings: List[str] = []
    for i, item in enumerate(raw or []):
        try:
            locks.append(Lock.from_dict(item))
        except (ValueError, KeyError, TypeError) as e:
            lid = item.get("id", f"#{i}") if isinstance(item, dict) else f"#{i}"
            warnings.append(f"lock {lid!r} skipped: undecodable record ({e.__class__.__name__})")
    return locks, warnings


def _decode_resources(raw: Optional[List[Json]]) -> Optional[tuple]:
    if raw is None:
        return None
    return tuple(Resource(str(r["id"]), str(r.get("title", ""))) for r in raw)


def rpc_evaluate(locks: List[Json], resources: Optional[List[Json]] = None,
                 users: Optional[List[str]] = None) -> Json:
    decoded, bad = _decode_locks(locks)
    for w in bad:
        logger.warning(w)
    snap = LedgerSnapshot(locks=tuple(decoded), resources=_decode_resources(resources), warnings=tuple(bad))
    return evaluate(snap, known_users=users).to_dict()


def make_rpc_recommend(advisor: ResolutionAdvisor) -> Handler:
    def rpc_recommend(cycles: List[List[Json]], locks: List[Json],
                      metadata: Optional[Dict[str, Json]] = None,
                      resources: Optional[List[Json]] = None) -> List[List[Json]]:
        decoded, _ = _decode_locks(locks)
        meta = {uid: UserMetadata.from_dict(m) for uid, m in (metadata or {}).items()}
        ranked = advisor.recommend(
            [Cycle.from_list(c) for c in cycles], decoded, meta, _decode_resources(resources)
        )
        return [[r.to_dict() for r in recs] for recs in ranked]
    return rpc_recommend


def make_rpc_evaluate_holdings(advisor: ResolutionAdvisor) -> Handler:
    def rpc_evaluate_holdings(processes: Optional[List[Json]] = None, name: Optional[str] = None) -> Json:
        if processes is None:
            if name not in EXAMPLE_SCENARIOS:
                raise ValueError(f"unknown scenario {name!r}")
            processes = EXAMPLE_SCENARIOS[name]["processes"]
        return scenario_report(processes, advisor)
    return rpc_evaluate_holdings


def build_kernel_registry(advisor: ResolutionAdvisor) -> JsonRpcRegistry:
    rpc = JsonRpcRegistry()
    rpc.register("kernel.evaluate", rpc_evaluate)
    rpc.register("kernel.recommend", make_rpc_recommend(advisor))
    rpc.register("kernel.evaluate_holdings", make_rpc_evaluate_holdings(advisor))
    return rpc

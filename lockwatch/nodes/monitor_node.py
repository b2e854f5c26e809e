from __future__ import annotations
import asyncio
from typing import Any, Dict, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.asyncio import Redis

from lockwatch.communication.advice_client import CONTEXTS, AdviceClient, summarize
from lockwatch.communication.change_feed import LedgerPoller, RedisChangeFeed
from lockwatch.communication.message_passing import build_kernel_registry
from lockwatch.detection.advisor import ResolutionAdvisor, ScoringWeights
from lockwatch.detection.coordinator import CoordinatorState, DetectionCoordinator, maybe_await
from lockwatch.detection.errors import AdviceServiceError, LockNotFound, UpstreamRateLimited
from lockwatch.detection.graph import build_wait_for_graph
from lockwatch.detection.scenarios import EXAMPLE_SCENARIOS, list_scenarios, scenario_report
from lockwatch.nodes.lock_manager import LockLedger
from lockwatch.nodes.redis_ledger import RedisLedger
from lockwatch.utils.config import Settings, load_settings
from lockwatch.utils.logger import setup_logger

logger = setup_logger(__name__)


async def _body(req: web.Request) -> Dict[str, Any]:
    try:
        body = await req.json()
    except ValueError:
        raise web.HTTPBadRequest(text='{"error": "invalid_json"}', content_type="application/json")
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text='{"error": "invalid_json"}', content_type="application/json")
    return body


@web.middleware
async def err_middleware(request, handler):
    """No bare 500s: unexpected exceptions become a JSON body."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception("unhandled error on %s %s", request.method, request.path)
        return web.json_response({"error": "internal", "detail": repr(e)}, status=500)


def build_app(
    ledger,
    coordinator: DetectionCoordinator,
    advice: Optional[AdviceClient] = None,
    cfg: Optional[Settings] = None,
) -> web.Application:
    cfg = cfg or load_settings()
    app = web.Application(middlewares=[err_middleware])

    async def current_report():
        if coordinator.latest is None or coordinator.state != CoordinatorState.IDLE:
            await coordinator.wait_idle()
        if coordinator.latest is None:
            return await coordinator.evaluate_now()
        return coordinator.latest

    # Health
    async def health(_):
        return web.json_response({
            "ok": True,
            "node": cfg.node_id,
            "ledger": cfg.ledger_backend,
            "coordinator": coordinator.state,
            "generation": coordinator.generation,
            "published": coordinator.published,
        })

    # --------- Resource & lock endpoints (reference ledger) ---------
    async def resource_create(req: web.Request):
        body = await _body(req)
        rid = body.get("id"); title = body.get("title") or ""
        if not rid:
            return web.json_response({"error": "bad_request"}, status=400)
        res = await maybe_await(ledger.register_resource(str(rid), str(title)))
        return web.json_response({"resource": res.to_dict()})

    async def lock_acquire(req: web.Request):
        body = await _body(req)
        resource = body.get("resource"); user = body.get("user")
        if not resource or not user:
            return web.json_response({"error": "bad_request"}, status=400)
        lock = await maybe_await(ledger.acquire(str(resource), str(user)))
        return web.json_response({"status": "granted" if lock.is_held else "pending", "lock": lock.to_dict()})

    async def lock_release(req: web.Request):
        body = await _body(req)
        lock_id = body.get("lock_id")
        resource = body.get("resource"); user = body.get("user")
        try:
            if lock_id:
                lock = await maybe_await(ledger.release(str(lock_id)))
            elif resource and user:
                lock = await maybe_await(ledger.release_resource(str(resource), str(user)))
            else:
                return web.json_response({"error": "bad_request"}, status=400)
        except LockNotFound as e:
            return web.json_response({"error": "not_found", "detail": str(e)}, status=404)
        return web.json_response({"status": "released", "lock": lock.to_dict()})

    async def lock_list(_):
        snap = await maybe_await(ledger.snapshot())
        return web.json_response({"version": snap.version, "locks": [lk.to_dict() for lk in snap.locks]})

    # --------- Deadlock endpoints ---------
    async def deadlock_get(_):
        report = await current_report()
        if report is None:
            return web.json_response({"error": "evaluation_failed",
                                      "detail": repr(coordinator.last_error)}, status=503)
        return web.json_response(report.to_dict())

    async def deadlock_evaluate(_):
        report = await coordinator.evaluate_now()
        if report is None:
            return web.json_response({"error": "evaluation_failed",
                                      "detail": repr(coordinator.last_error)}, status=503)
        return web.json_response(report.to_dict())

    async def deadlock_recommendations(req: web.Request):
        report = await current_report()
        if report is None:
            return web.json_response({"error": "evaluation_failed"}, status=503)
        user = req.query.get("user") or None
        recs = report.flat_recommendations(user)
        return web.json_response({
            "hasDeadlock": report.result.has_deadlock,
            "recommendations": [r.to_dict() for r in recs],
        })

    async def graph_get(_):
        snap = await maybe_await(ledger.snapshot())
        return web.json_response(build_wait_for_graph(snap).to_dict())

    # --------- Example scenarios (static holdings, ledger untouched) ---------
    async def scenarios_get(_):
        return web.json_response({"scenarios": list_scenarios()})

    async def scenario_evaluate(req: web.Request):
        body = await _body(req)
        processes = body.get("processes")
        if processes is None:
            name = body.get("name")
            if name not in EXAMPLE_SCENARIOS:
                return web.json_response({"error": "unknown_scenario", "allowed": list(EXAMPLE_SCENARIOS)},
                                         status=404)
            processes = EXAMPLE_SCENARIOS[name]["processes"]
        try:
            report = scenario_report(processes, coordinator.advisor)
        except ValueError as e:
            return web.json_response({"error": "bad_request", "detail": str(e)}, status=400)
        return web.json_response(report)

    # --------- Advice ---------
    async def advice_post(req: web.Request):
        body = await _body(req)
        context = body.get("context", "deadlock")
        if context not in CONTEXTS:
            return web.json_response({"error": "bad_context", "allowed": list(CONTEXTS)}, status=400)
        if advice is None or not advice.enabled:
            return web.json_response({"error": "advice_disabled"}, status=503)
        snap = await maybe_await(ledger.snapshot())
        report = await current_report()
        summary = summarize(snap, report.result if report else None, cfg.max_users, cfg.max_resources)
        try:
            reply = await advice.suggest(summary, context)
        except UpstreamRateLimited as e:
            return web.json_response(
                {"error": "rate_limited", "transient": True, "retry_after": e.retry_after,
                 "userMessage": e.user_message},
                status=429, headers={"Retry-After": str(int(e.retry_after))},
            )
        except AdviceServiceError as e:
            return web.json_response(
                {"error": "advice_failed", "transient": e.transient, "detail": str(e),
                 "userMessage": "Unable to get suggestions right now. Please try again in a moment."},
                status=502,
            )
        return web.json_response({"reply": reply, "summary": summary.to_params()})

    # --------- Metrics ---------
    async def metrics_get(_):
        return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})

    rpc = build_kernel_registry(coordinator.advisor)

    app.add_routes([
        web.get("/health", health),
        web.post("/resources", resource_create),
        web.post("/lock/acquire", lock_acquire),
        web.post("/lock/release", lock_release),
        web.get("/locks", lock_list),
        web.get("/deadlock", deadlock_get),
        web.post("/deadlock/evaluate", deadlock_evaluate),
        web.get("/deadlock/recommendations", deadlock_recommendations),
        web.get("/graph", graph_get),
        web.get("/scenarios", scenarios_get),
        web.post("/deadlock/scenario", scenario_evaluate),
        web.post("/advice", advice_post),
        web.post("/rpc", rpc.handle),
        web.get("/metrics", metrics_get),
    ])
    return app


def build_ledger(cfg: Settings, redis: Optional[Redis] = None):
    if cfg.uses_redis:
        assert redis is not None, "redis backend needs a client"
        return RedisLedger(redis, namespace=cfg.ledger_namespace)
    return LockLedger()


# --------- MAIN ---------
async def main():
    cfg = load_settings()

    redis: Optional[Redis] = None
    if cfg.uses_redis:
        redis = Redis.from_url(cfg.redis_url, encoding="utf-8", decode_responses=True)
    ledger = build_ledger(cfg, redis)

    advisor = ResolutionAdvisor(ScoringWeights.from_settings(cfg), exempt_users=cfg.exempt_users)
    coordinator = DetectionCoordinator(ledger, advisor)
    advice = AdviceClient(
        cfg.advice_url,
        timeout=cfg.advice_timeout_sec,
        retries=cfg.advice_retries,
        backoff=cfg.advice_backoff_ms / 1000.0,
    )

    # change notifications: in-process push, redis pub/sub, optional polling
    feeds = []
    if isinstance(ledger, LockLedger):
        ledger.subscribe(coordinator.notify)
    else:
        feeds.append(RedisChangeFeed(redis, ledger.channel))
    if cfg.poll_interval_sec > 0:
        feeds.append(LedgerPoller(ledger, interval=cfg.poll_interval_sec))
    for feed in feeds:
        feed.subscribe(coordinator.notify)

    app = build_app(ledger, coordinator, advice, cfg)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", cfg.http_port)
    await site.start()
    for feed in feeds:
        await feed.start()
    logger.info("lockwatch %s listening on :%d (ledger=%s)", cfg.node_id, cfg.http_port, cfg.ledger_backend)

    coordinator.notify()  # initial evaluation

    try:
        await asyncio.Event().wait()
    finally:
        for feed in feeds:
            await feed.stop()
        await coordinator.close()
        await advice.close()
        await runner.cleanup()
        if redis is not None:
            await redis.aclose()


if __name__ == "__main__":
    asyncio.run(main())

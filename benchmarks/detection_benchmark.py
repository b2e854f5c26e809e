# benchmarks/detection_benchmark.py
from __future__ import annotations

import argparse
import asyncio
import json
import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from aiohttp import ClientSession, ClientError, TCPConnector

from lockwatch.detection.advisor import ResolutionAdvisor
from lockwatch.detection.cycles import detect
from lockwatch.detection.graph import build_wait_for_graph
from lockwatch.detection.models import LedgerSnapshot, Lock

# ===================== Stats helpers =====================
@dataclass
class OpStats:
    n: int = 0
    ok: int = 0
    lat_ms: List[float] = field(default_factory=list)

    def add(self, ok: bool, lat_ms: float) -> None:
        self.n += 1
        if ok:
            self.ok += 1
        self.lat_ms.append(lat_ms)

    def avg_ms(self) -> float:
        return (sum(self.lat_ms) / len(self.lat_ms)) if self.lat_ms else 0.0

    def p95_ms(self) -> float:
        if not self.lat_ms:
            return 0.0
        ordered = sorted(self.lat_ms)
        return ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))]


@dataclass
class BenchStats:
    ops: Dict[str, OpStats] = field(default_factory=dict)
    t_start: float = 0.0
    t_end: float = 0.0
    deadlocks: int = 0

    def rec(self, op: str, ok: bool, lat_ms: float) -> None:
        self.ops.setdefault(op, OpStats()).add(ok, lat_ms)

    @property
    def total_req(self) -> int: return sum(s.n for s in self.ops.values())
    @property
    def total_ok(self)  -> int: return sum(s.ok for s in self.ops.values())
    @property
    def total_fail(self)-> int: return self.total_req - self.total_ok
    @property
    def duration(self)  -> float: return max(0.0, self.t_end - self.t_start)
    @property
    def avg_latency(self)-> float:
        all_lat = [lm for s in self.ops.values() for lm in s.lat_ms]
        return (sum(all_lat) / len(all_lat)) if all_lat else 0.0
    @property
    def throughput(self) -> float:
        return (self.total_req / self.duration) if self.duration > 0 else 0.0

# ===================== IO helpers =====================
def line(ch: str = "-") -> None:
    print(ch * 74)

def _safe_json(txt: str) -> Dict:
    try:
        return json.loads(txt)
    except ValueError:
        return {"text": txt[:500]}

async def timed_request(
    sess: ClientSession, method: str, url: str, *, json_body=None, timeout: float = 5.0
) -> Tuple[bool, float, Dict]:
    t0 = time.perf_counter()
    data: Dict = {}
    ok = False
    try:
        async with sess.request(method, url, json=json_body, timeout=timeout) as resp:
            data = _safe_json(await resp.text())
            ok = 200 <= resp.status < 300
    except (ClientError, asyncio.TimeoutError) as e:
        data = {"error": str(e)}
    lat_ms = (time.perf_counter() - t0) * 1000.0
    return ok, lat_ms, data

async def run_pool(total: int, conc: int, worker):
    q: asyncio.Queue[int] = asyncio.Queue()
    for i in range(total):
        q.put_nowait(i)

    async def consumer():
        while not q.empty():
            try:
                idx = q.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await worker(idx)
            finally:
                q.task_done()

    tasks = [asyncio.create_task(consumer()) for _ in range(conc)]
    await asyncio.gather(*tasks)

# ===================== Synthetic ledgers =====================
def random_ledger(rng: random.Random, users: int, resources: int, requests_per_user: int) -> LedgerSnapshot:
    """Every resource gets at most one holder; the rest of the requests queue."""
    locks: List[Lock] = []
    holder: Dict[str, str] = {}
    t = 0.0
    for u in range(users):
        uid = f"u{u}"
        wanted = rng.sample(range(resources), min(requests_per_user, resources))
        for r in wanted:
            rid = f"r{r}"
            t += 1.0
            if rid not in holder:
                holder[rid] = uid
                locks.append(Lock(f"{uid}:{rid}", uid, rid, requested_at=t, acquired_at=t))
            else:
                locks.append(Lock(f"{uid}:{rid}", uid, rid, requested_at=t))
    return LedgerSnapshot(locks=tuple(locks))

# ===================== Scenarios =====================
async def scenario_kernel(args, stats: BenchStats):
    """
    build graph -> detect -> recommend, in process, on random ledgers
    """
    rng = random.Random(args.seed)
    advisor = ResolutionAdvisor()
    for _ in range(args.iterations):
        snap = random_ledger(rng, args.users, args.resources, args.requests_per_user)

        t0 = time.perf_counter()
        graph = build_wait_for_graph(snap)
        stats.rec("kernel.build", True, (time.perf_counter() - t0) * 1000.0)

        t0 = time.perf_counter()
        result = detect(graph)
        stats.rec("kernel.detect", True, (time.perf_counter() - t0) * 1000.0)

        if result.has_deadlock:
            stats.deadlocks += 1
            t0 = time.perf_counter()
            ranked = advisor.recommend(result.cycles, snap.locks)
            stats.rec("kernel.recommend", all(ranked), (time.perf_counter() - t0) * 1000.0)

async def scenario_http(args, stats: BenchStats):
    """
    crossed acquire pairs -> GET /deadlock -> release everything
    """
    base = args.target.rstrip("/")
    conn = TCPConnector(limit_per_host=max(100, args.concurrency * 2))

    async with ClientSession(connector=conn) as sess:
        async def worker(i: int):
            a, b = f"bench-{i}-a", f"bench-{i}-b"
            r1, r2 = f"bench-{i}-1", f"bench-{i}-2"
            for res, user in ((r1, a), (r2, b), (r2, a), (r1, b)):
                ok, lat, _ = await timed_request(sess, "POST", f"{base}/lock/acquire",
                                                 json_body={"resource": res, "user": user},
                                                 timeout=args.timeout)
                stats.rec("lock.acquire", ok, lat)

            ok, lat, data = await timed_request(sess, "GET", f"{base}/deadlock", timeout=args.timeout)
            stats.rec("deadlock.get", ok, lat)
            if ok and data.get("hasDeadlock"):
                stats.deadlocks += 1

            for res, user in ((r1, a), (r2, a), (r1, b), (r2, b)):
                ok, lat, _ = await timed_request(sess, "POST", f"{base}/lock/release",
                                                 json_body={"resource": res, "user": user},
                                                 timeout=args.timeout)
                stats.rec("lock.release", ok, lat)

        await run_pool(args.iterations, args.concurrency, worker)

# ===================== CLI & printing =====================
def print_summary(args, stats: BenchStats, target_desc: str):
    line()
    print("Benchmark Results:")
    line()
    print(f"Total Operations     : {stats.total_req:>6}")
    print(f"Successful           : {stats.total_ok:>6}")
    print(f"Failed               : {stats.total_fail:>6}")
    print(f"Deadlocks Seen       : {stats.deadlocks:>6}")
    print(f"Average Latency      : {stats.avg_latency:8.2f} ms")
    print(f"Total Time Taken     : {stats.duration:8.2f} s")
    print(f"Throughput           : {stats.throughput:8.2f} ops/sec")
    line()
    if stats.ops:
        print("Per-operation breakdown:")
        print(f"{'Op':<18} {'N':>8} {'OK':>8} {'Avg(ms)':>10} {'p95(ms)':>10}")
        for op, s in stats.ops.items():
            print(f"{op:<18} {s.n:>8} {s.ok:>8} {s.avg_ms():>10.3f} {s.p95_ms():>10.3f}")
        line()
    print("[INFO] Scenario       :", args.scenario)
    print("[INFO] Target         :", target_desc)
    print("[INFO] Iterations     :", args.iterations)
    if args.scenario == "kernel":
        print("[INFO] Users/Resources:", f"{args.users}/{args.resources}")
        print("[INFO] Requests/user  :", args.requests_per_user)
    else:
        print("[INFO] Concurrency    :", args.concurrency)
    line("=")

async def main_async(args):
    line()
    print("[INFO] Starting benchmark...")
    if args.scenario == "kernel":
        desc = "in-process graph build + cycle detection + ranking"
    else:
        desc = f"{args.target.rstrip('/')}/lock/* + /deadlock"
    print("[INFO] Target :", desc)
    line()

    stats = BenchStats()
    stats.t_start = time.perf_counter()
    if args.scenario == "kernel":
        await scenario_kernel(args, stats)
    else:
        await scenario_http(args, stats)
    stats.t_end = time.perf_counter()
    print_summary(args, stats, desc)

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="benchmarks.detection_benchmark",
        description="Stdout-only benchmark for deadlock detection, in process or against a monitor node."
    )
    p.add_argument("--scenario", choices=["kernel", "http"], required=True)
    p.add_argument("--target", type=str, default="http://localhost:8080", help="Monitor node base URL.")
    p.add_argument("--iterations", type=int, default=200)
    p.add_argument("--concurrency", type=int, default=20)
    p.add_argument("--timeout", type=float, default=5.0)
    p.add_argument("--users", type=int, default=200)
    p.add_argument("--resources", type=int, default=400)
    p.add_argument("--requests-per-user", type=int, default=3)
    p.add_argument("--seed", type=int, default=7)
    return p

def main():
    args = build_parser().parse_args()
    asyncio.run(main_async(args))

if __name__ == "__main__":
    main()

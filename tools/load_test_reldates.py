#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Load test for reldates: resolve expressions from a thread pool while another
thread keeps resetting the base date.

Usage:
  python3 tools/load_test_reldates.py --ops 20000 --concurrency 8
  python3 tools/load_test_reldates.py --ops 5000 --resets 200 --tz Europe/London
"""

from __future__ import annotations

import argparse
import random
import statistics
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(REPO_ROOT))

import reldates_core as core  # noqa: E402


EXPRESSIONS = [
    "today",
    "+1d",
    "-7d",
    "+1d 17:00",
    "+2w",
    "-1Mon",
    "+0Fri 09:00",
    "+1m15",
    "-1mL",
    "+3mL",
    "-1y",
    "+0yL",
    "+1y100",
    "20151231",
    "2015-12-31",
    "12/31/2015",
]


def _percentile(vals: list[float], pct: float) -> float:
    if not vals:
        return 0.0
    vals = sorted(vals)
    k = (len(vals) - 1) * pct
    f = int(k)
    c = min(f + 1, len(vals) - 1)
    if f == c:
        return vals[f]
    return vals[f] + (vals[c] - vals[f]) * (k - f)


def _one(expr: str) -> tuple[bool, str, float]:
    t0 = time.perf_counter()
    try:
        d = core.parse_date(expr)
        dt = time.perf_counter() - t0
        # absolute dates and 'today' always land on midnight
        if not core.is_relative_expression(expr) and d != core.truncate_to_midnight(d):
            return False, f"{expr}: not midnight: {d}", dt
        return True, "", dt
    except core.FormatError as e:
        return False, f"{expr}: {e}", time.perf_counter() - t0


def main() -> int:
    ap = argparse.ArgumentParser(description="reldates concurrency load test")
    ap.add_argument("--ops", type=int, default=20000, help="number of resolve calls")
    ap.add_argument("--concurrency", type=int, default=8, help="worker threads")
    ap.add_argument("--resets", type=int, default=100, help="base date resets during the run")
    ap.add_argument("--tz", default="", help="IANA zone to use (adds DST expressions)")
    ap.add_argument("--seed", type=int, default=1, help="random seed for the expression mix")
    args = ap.parse_args()

    exprs = list(EXPRESSIONS)
    if args.tz:
        core.LOCAL_TZ_NAME = args.tz
        core._clear_all_caches()
        exprs += ["+0SDST", "+0EDST-1d 12:00"]

    rnd = random.Random(args.seed)
    work = [rnd.choice(exprs) for _ in range(args.ops)]

    stop = threading.Event()

    def _resetter():
        for _ in range(args.resets):
            if stop.is_set():
                return
            core.reset_base_date()
            time.sleep(0.001)

    t_reset = threading.Thread(target=_resetter, name="resetter")
    t0 = time.perf_counter()
    t_reset.start()
    with ThreadPoolExecutor(max_workers=args.concurrency) as ex:
        results = list(ex.map(_one, work))
    stop.set()
    t_reset.join()
    wall = time.perf_counter() - t0

    fails = [msg for ok, msg, _ in results if not ok]
    lat_ms = [dt * 1000.0 for _, _, dt in results]
    print(f"ops={len(results)} concurrency={args.concurrency} resets={args.resets} wall={wall:.2f}s")
    print(
        f"latency ms: p50={_percentile(lat_ms, 0.50):.3f} p95={_percentile(lat_ms, 0.95):.3f} "
        f"p99={_percentile(lat_ms, 0.99):.3f} mean={statistics.fmean(lat_ms) if lat_ms else 0.0:.3f}"
    )
    print(f"throughput: {len(results) / wall if wall > 0 else 0.0:.0f} ops/s")
    if fails:
        print(f"failures: {len(fails)}")
        for msg in fails[:10]:
            print(f"  - {msg}")
        return 1
    print("failures: 0")
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
cardpass load client (async)

Replays the provisioning pipeline against a running server:
  1) POST /api/checkout  (plan, pix) -> {payment_id, pix_code}
  2) POST /payments/webhook  the same approved event --duplicates times,
     concurrently (what a retrying payment provider does)
  3) Poll GET /api/payments/{payment_id} until an activation code shows up
  4) POST /api/codes/{code}/activate-card from --redeemers concurrent
     clients; exactly one of them may win

It records timings per payment and prints an aggregate report, including
any invariant violation it observed (more than one code per payment, more
than one winning redeemer per code).

Usage:
  python -m cardpass.load_client --base http://localhost:8000 \
                                 --total 200 --concurrency 50

  python -m cardpass.load_client --total 100 --duplicates 5 --redeemers 4 \
                                 --webhook-secret s3cret
"""

import asyncio
import random
import string
import time
import argparse
import uuid
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx
import orjson

from .gateway import SIGNATURE_HEADER, sign


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Result:
    ok: bool
    plan: str
    outcome: str  # REDEEMED/NO_CODE/TIMEOUT/ERROR
    codes_seen: int = 0
    winners: int = 0
    conflicts: int = 0
    t_checkout: float = 0.0
    t_webhooks: float = 0.0
    t_issued: float = 0.0  # time until the activation code was observed
    t_redeem: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_issued for r in self.results if r.t_issued > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "redeemed": sum(
                1 for r in self.results if r.outcome == "REDEEMED"
            ),
            "timeout": sum(1 for r in self.results if r.outcome == "TIMEOUT"),
            "error": sum(1 for r in self.results if r.outcome == "ERROR"),
            "conflicts": sum(r.conflicts for r in self.results),
            "double_issue": sum(1 for r in self.results if r.codes_seen > 1),
            "double_redeem": sum(1 for r in self.results if r.winners > 1),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"REDEEMED: {int(s['redeemed'])}   TIMEOUT: {int(s['timeout'])}"
            f"   ERROR: {int(s['error'])}   "
            f"lost redemption races: {int(s['conflicts'])}"
        )
        print(
            f"Invariant violations: double issue {int(s['double_issue'])}   "
            f"double redeem {int(s['double_redeem'])}"
        )
        print(
            f"Latency (checkout to issued code): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )


async def one_payment(
    client: httpx.AsyncClient,
    base: str,
    plan: str,
    duplicates: int,
    redeemers: int,
    secret: Optional[str],
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, plan=plan, outcome="ERROR")
    email = _rand_email()

    # 1) checkout
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/checkout",
            json={
                "plan": plan,
                "payment_method": "pix",
                "customer": {"name": "Load Client", "email": email},
            },
            timeout=30.0,
        )
        resp.raise_for_status()
        j = resp.json()
        payment_id = j["payment_id"]
        amount = j["amount"]
    except Exception as e:
        r.err = f"checkout: {e}"
        return r
    r.t_checkout = time.perf_counter() - t0

    # 2) the provider delivers one approval several times
    payload = orjson.dumps({
        "event_id": f"evt_{uuid.uuid4().hex}",
        "payment_id": payment_id,
        "status": "approved",
        "amount": amount,
    })
    headers = {"content-type": "application/json"}
    if secret:
        headers[SIGNATURE_HEADER] = sign(secret, payload)
    t1 = time.perf_counter()
    try:
        acks = await asyncio.gather(*[
            client.post(f"{base}/payments/webhook", content=payload,
                        headers=headers, timeout=30.0)
            for _ in range(duplicates)
        ])
        bad = [a.status_code for a in acks if a.status_code != 200]
        if bad:
            r.err = f"webhook HTTP {bad}"
            return r
    except Exception as e:
        r.err = f"webhook: {e}"
        return r
    r.t_webhooks = time.perf_counter() - t1

    # 3) poll until the code is visible
    deadline = t0 + poll_timeout_s
    code = None
    codes = set()
    try:
        while time.perf_counter() < deadline:
            g = await client.get(f"{base}/api/payments/{payment_id}",
                                 timeout=10.0)
            if g.status_code == 200:
                jo = g.json()
                if jo.get("activation_code"):
                    code = jo["activation_code"]
                    codes.add(code)
                    break
                if jo.get("status") in ("failed", "cancelled", "refunded"):
                    break
            await asyncio.sleep(poll_interval_s)
    except Exception as e:
        r.err = f"poll: {e}"
        return r
    r.codes_seen = len(codes)
    if code is None:
        r.ok = True
        r.outcome = "TIMEOUT" if time.perf_counter() >= deadline else "NO_CODE"
        return r
    r.t_issued = time.perf_counter() - t0

    # 4) several clients race to redeem the same code
    t3 = time.perf_counter()
    body = {
        "name": "Load Client",
        "email": email,
        "accept_terms": True,
        "profile": {"name": "Load Client", "email": email},
    }
    try:
        tries = await asyncio.gather(*[
            client.post(f"{base}/api/codes/{code}/activate-card", json=body,
                        timeout=30.0)
            for _ in range(redeemers)
        ])
    except Exception as e:
        r.err = f"redeem: {e}"
        return r
    r.t_redeem = time.perf_counter() - t3
    r.winners = sum(1 for t in tries if t.status_code == 201)
    r.conflicts = sum(1 for t in tries if t.status_code == 409)
    r.ok = True
    r.outcome = "REDEEMED" if r.winners else "ERROR"
    return r


async def run_load(
    base: str,
    total: int,
    concurrency: int,
    duplicates: int,
    redeemers: int,
    secret: Optional[str],
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "CardpassLoad/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                plan = random.choice(("basic", "premium", "business"))
                res = await one_payment(
                    client, base, plan, duplicates, redeemers, secret,
                    poll_interval_s, poll_timeout_s
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="cardpass load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--total", type=int, default=100,
                    help="Total payments to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--duplicates", type=int, default=3,
                    help="Deliveries of each approval webhook")
    ap.add_argument("--redeemers", type=int, default=2,
                    help="Concurrent redemption attempts per code")
    ap.add_argument("--webhook-secret", default=None,
                    help="Sign webhooks with this secret (WEBHOOK_SECRET)")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for the activation code")
    args = ap.parse_args()

    if args.duplicates < 1 or args.redeemers < 1:
        ap.error("--duplicates and --redeemers must be at least 1")

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        total=args.total,
        concurrency=args.concurrency,
        duplicates=args.duplicates,
        redeemers=args.redeemers,
        secret=args.webhook_secret,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()

"""
Spike test: sudden traffic surges.

Simulates a flash sale: a small baseline population jumps to 200 users
within ten seconds, holds, drops back, then spikes again to 150.  The
interesting numbers are how latency behaves during each surge and how
quickly it recovers once the surge subsides.

Users beyond the first fifty only exist during a surge, so they behave
like flash-sale shoppers (searching and listing deals with almost no
think time); the baseline users browse normally.

Custom metrics:
- ``spike_response_time`` -- wall-clock time of each iteration's requests
- ``recovery_time`` -- the same, for fast baseline iterations only
- ``spike_errors`` -- failed requests made by surge users
"""

from __future__ import annotations

import random
import time

from helpers import auth_headers, get_products, login, search_products, summary_to

from vuload import Counter, Trend

SURGE_VU_THRESHOLD = 50

spike_errors = Counter("spike_errors")
recovery_time = Trend("recovery_time", is_time=True)
spike_response_time = Trend("spike_response_time", is_time=True)

options = {
    "scenarios": {
        "spike": {
            "executor": "ramping-vus",
            "startVUs": 0,
            "stages": [
                {"duration": "30s", "target": 10},
                {"duration": "10s", "target": 200},
                {"duration": "1m", "target": 200},
                {"duration": "10s", "target": 10},
                {"duration": "1m", "target": 10},
                {"duration": "10s", "target": 150},
                {"duration": "30s", "target": 150},
                {"duration": "10s", "target": 10},
                {"duration": "30s", "target": 10},
            ],
            "tags": {"testType": "spike"},
        },
    },
    "thresholds": {
        # Up to 15 % failures are tolerated while the surge lasts.
        "http_req_failed": ["rate<0.15"],
        "spike_response_time": ["p(95)<3000"],
    },
}


def setup(ctx):
    return {"token": login(ctx)}


def default(ctx, data):
    headers = auth_headers(data["token"])
    surging = ctx.vu_id > SURGE_VU_THRESHOLD
    started = time.perf_counter()

    if surging:
        if random.randint(1, 10) <= 6:
            response = search_products(ctx, "product", headers)
        else:
            response = get_products(ctx, {"page": 1, "limit": 50}, headers)
        if response.status == 0 or response.status >= 400:
            spike_errors.add(1)
    else:
        get_products(ctx, {"page": random.randint(1, 10), "limit": 20}, headers)

    elapsed = (time.perf_counter() - started) * 1000
    spike_response_time.add(elapsed)
    if not surging and elapsed < 200:
        recovery_time.add(elapsed)

    # Keep the pressure on during a surge.
    ctx.sleep(0.1 if surging else random.uniform(0.5, 1.5))


handle_summary = summary_to("reports/spike-summary.json")

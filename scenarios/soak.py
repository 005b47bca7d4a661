"""
Soak test: stability over an extended period.

Holds thirty users for ten minutes (stretch the middle stage for a real
soak) to surface memory leaks, connection-pool exhaustion and gradual
latency creep.  The journey mix is read-heavy: browsing and searching
(40 %), product detail (30 %), cart operations (20 %) and expensive
searches (10 %).

Compare ``memory_indicator_response_time`` between the start and the
end of the run (``--out json=...``) to spot degradation.
"""

from __future__ import annotations

import logging
import random
import time
from pathlib import Path

from helpers import (
    SEARCH_TERMS,
    add_to_cart,
    auth_headers,
    get_cart,
    get_product,
    get_products,
    login,
    search_products,
    think,
)

from vuload import Counter, Trend
from vuload.script import load_thresholds_file
from vuload.summary import render_text

logger = logging.getLogger("scenarios.soak")

hourly_errors = Counter("hourly_errors")
memory_indicator = Trend("memory_indicator_response_time", is_time=True)

options = {
    "scenarios": {
        "soak": {
            "executor": "ramping-vus",
            "startVUs": 0,
            "stages": [
                {"duration": "2m", "target": 30},
                {"duration": "10m", "target": 30},
                {"duration": "2m", "target": 0},
            ],
            "gracefulStop": "30s",
            "tags": {"testType": "soak"},
        },
    },
    "thresholds": {
        **load_thresholds_file(Path(__file__).with_name("thresholds.yml")),
        # Long runs get a tighter error budget.
        "http_req_failed": ["rate<0.01"],
    },
}


def setup(ctx):
    return {"token": login(ctx), "started": time.time()}


def default(ctx, data):
    headers = auth_headers(data["token"])
    journey = random.randint(1, 100)

    if journey <= 40:
        get_products(ctx, {"page": random.randint(1, 20), "limit": 20}, headers)
        think(ctx, 2, 5)
        if random.randint(1, 2) == 1:
            search_products(ctx, random.choice(SEARCH_TERMS), headers)
    elif journey <= 70:
        started = time.perf_counter()
        response = get_product(ctx, random.randint(1, 500), headers)
        memory_indicator.add((time.perf_counter() - started) * 1000)
        if response.status != 200:
            hourly_errors.add(1)
        think(ctx, 1, 3)
    elif journey <= 90:
        if data["token"]:
            get_cart(ctx, headers)
            ctx.sleep(1)
            if random.randint(1, 3) == 1:
                add_to_cart(ctx, random.randint(1, 100), 1, headers)
        think(ctx, 2, 4)
    else:
        search_products(ctx, "product description quality", headers)
        think(ctx, 3, 6)

    if ctx.iteration % 100 == 0:
        minutes = int((time.time() - data["started"]) // 60)
        logger.info("Minute %d: VU %d at iteration %d", minutes, ctx.vu_id, ctx.iteration)


def handle_summary(data):
    indicator = data["metrics"].get("memory_indicator_response_time", {})
    report = {
        **data,
        "soakAnalysis": {
            "totalDurationMs": data["state"]["testRunDurationMs"],
            "memoryTrend": indicator.get("values"),
        },
    }
    return {"reports/soak-summary.json": report, "stdout": render_text(data)}

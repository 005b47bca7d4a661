"""
Stress test: find the breaking point.

Steps the population from 20 to 300 users in two-minute increments, then
lets the system recover.  Watch where ``http_req_duration`` starts to
climb and ``error_rate`` starts to rise; ``handle_summary`` writes those
indicators next to the full summary.

Operations: product listings (40 %), searches (30 %) and single
products (30 %) with random IDs to defeat caching.
"""

from __future__ import annotations

import random
import time

from helpers import auth_headers, get_product, get_products, login, search_products

from vuload import Counter, Rate, Trend
from vuload.summary import render_text

# Successful responses slower than this count as degraded.
DEGRADATION_THRESHOLD_MS = 500

STRESS_TERMS = ["product", "quality", "best", "new", "sale", "premium"]

error_rate = Rate("error_rate")
degraded_responses = Counter("degraded_responses")
response_time = Trend("response_time_trend", is_time=True)

options = {
    "scenarios": {
        "stress": {
            "executor": "ramping-vus",
            "startVUs": 0,
            "stages": [
                {"duration": "1m", "target": 20},
                {"duration": "2m", "target": 50},
                {"duration": "2m", "target": 100},
                {"duration": "2m", "target": 150},
                {"duration": "2m", "target": 200},
                {"duration": "2m", "target": 250},
                {"duration": "2m", "target": 300},
                {"duration": "2m", "target": 0},
            ],
            "tags": {"testType": "stress"},
        },
    },
    "thresholds": {
        "error_rate": ["rate<0.1"],
        "http_req_duration": ["p(95)<2000"],
        "degraded_responses": ["count<1000"],
    },
}


def setup(ctx):
    return {"token": login(ctx)}


def default(ctx, data):
    headers = auth_headers(data["token"])
    started = time.perf_counter()
    roll = random.randint(1, 10)

    if roll <= 4:
        response = get_products(ctx, {"page": random.randint(1, 50), "limit": 50}, headers)
    elif roll <= 7:
        response = search_products(ctx, random.choice(STRESS_TERMS), headers)
    else:
        response = get_product(ctx, random.randint(1, 1000), headers)

    elapsed = (time.perf_counter() - started) * 1000
    response_time.add(elapsed)

    failed = response.status == 0 or response.status >= 400
    error_rate.add(failed)
    if elapsed > DEGRADATION_THRESHOLD_MS and not failed:
        degraded_responses.add(1)

    ctx.sleep(random.uniform(0.1, 0.5))


def _value(data, metric, stat):
    return data["metrics"].get(metric, {}).get("values", {}).get(stat)


def handle_summary(data):
    report = {
        **data,
        "analysis": {
            "maxVUs": _value(data, "vus_max", "max"),
            "errorRateFinal": _value(data, "error_rate", "rate"),
            "p95ResponseTime": _value(data, "http_req_duration", "p(95)"),
            "degradedCount": _value(data, "degraded_responses", "count") or 0,
        },
    }
    return {"reports/stress-summary.json": report, "stdout": render_text(data)}

"""
Purchase flow load test.

Drives the complete e-commerce funnel under load: login, browse, view a
product, add it to the cart, view the cart and (for some users) check
out.  Each step runs inside a group so its requests can be told apart in
the JSON output.

Custom metrics:
- ``purchase_success`` / ``purchase_failed`` -- completed and failed funnels
- ``checkout_duration`` -- wall-clock time of the checkout call
"""

from __future__ import annotations

import random
import time
from pathlib import Path

from helpers import (
    add_to_cart,
    auth_headers,
    checkout,
    get_cart,
    get_product,
    get_products,
    login,
    summary_to,
    think,
    user_email,
)

from vuload import Counter, Trend
from vuload.script import load_thresholds_file

purchase_success = Counter("purchase_success")
purchase_failed = Counter("purchase_failed")
checkout_duration = Trend("checkout_duration", is_time=True)

options = {
    "stages": [
        {"duration": "30s", "target": 5},
        {"duration": "2m", "target": 20},
        {"duration": "3m", "target": 20},
        {"duration": "1m", "target": 50},
        {"duration": "2m", "target": 50},
        {"duration": "1m", "target": 0},
    ],
    "thresholds": {
        **load_thresholds_file(Path(__file__).with_name("thresholds.yml")),
        "purchase_success": ["count>0"],
        "checkout_duration": ["p(95)<1000"],
    },
}


def setup(ctx):
    return {"password": "password123"}


def default(ctx, data):
    with ctx.group("01_Login"):
        token = login(ctx, user_email(ctx.vu_id), data["password"])
        if token is None:
            purchase_failed.add(1)
            return
        ctx.sleep(1)

    headers = auth_headers(token)

    with ctx.group("02_Browse"):
        response = get_products(ctx, {"page": 1, "limit": 20}, headers)
        products = response.json("data") if response.status == 200 else None
        think(ctx, 2, 4)

    if not products:
        purchase_failed.add(1)
        return

    product = random.choice(products[:20])

    with ctx.group("03_ViewProduct"):
        get_product(ctx, product["id"], headers)
        think(ctx, 1, 3)

    with ctx.group("04_AddToCart"):
        add_to_cart(ctx, product["id"], random.randint(1, 3), headers)
        ctx.sleep(1)

    with ctx.group("05_ViewCart"):
        get_cart(ctx, headers)
        think(ctx, 1, 2)

    # The first VU always checks out so purchase_success has samples.
    if ctx.vu_id == 1 or random.randint(1, 10) <= 3:
        with ctx.group("06_Checkout"):
            started = time.perf_counter()
            response = checkout(ctx, headers)
            checkout_duration.add((time.perf_counter() - started) * 1000)
            if response.status == 201:
                purchase_success.add(1)
            else:
                purchase_failed.add(1)

    think(ctx, 1, 3)


handle_summary = summary_to("reports/purchase-flow-summary.json")

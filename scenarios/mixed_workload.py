"""
Mixed workload scenario.

Models a realistic production traffic mix with three concurrent user
types, each its own ramping-vus scenario tagged with ``userType``:

- browsers (60 %) look around anonymously and never convert,
- shoppers (30 %) log in and fill a cart, then abandon it,
- buyers (10 %) complete a purchase.

``conversion_rate`` records one sample per session: 1 when it ended in
an order.
"""

from __future__ import annotations

import random

from helpers import (
    add_to_cart,
    auth_headers,
    get_product,
    get_products,
    login,
    summary_to,
    think,
    user_email,
)

from vuload import Counter, Rate

browser_actions = Counter("browser_actions")
shopper_actions = Counter("shopper_actions")
buyer_actions = Counter("buyer_actions")
conversion_rate = Rate("conversion_rate")


def _ramp(target):
    return [
        {"duration": "1m", "target": target},
        {"duration": "3m", "target": target},
        {"duration": "1m", "target": 0},
    ]


options = {
    "scenarios": {
        "browsers": {
            "executor": "ramping-vus",
            "startVUs": 0,
            "stages": _ramp(30),
            "exec": "browser_behavior",
            "tags": {"userType": "browser"},
        },
        "shoppers": {
            "executor": "ramping-vus",
            "startVUs": 0,
            "stages": _ramp(15),
            "exec": "shopper_behavior",
            "tags": {"userType": "shopper"},
        },
        "buyers": {
            "executor": "ramping-vus",
            "startVUs": 0,
            "stages": _ramp(5),
            "exec": "buyer_behavior",
            "tags": {"userType": "buyer"},
        },
    },
    "thresholds": {
        "http_req_duration": ["p(95)<500"],
        "http_req_failed": ["rate<0.01"],
        "conversion_rate": ["rate>0"],
    },
}


def setup(ctx):
    return {"password": "password123"}


def _product_list(response):
    if response.status != 200:
        return []
    return response.json("data") or []


def browser_behavior(ctx, data):
    with ctx.group("Browser Session"):
        response = ctx.http.get("/api/products")
        ctx.check(response, {"products loaded": lambda r: r.status == 200})
        browser_actions.add(1)
        think(ctx, 2, 5)

        for _ in range(random.randint(1, 3)):
            ctx.http.get(f"/api/products/{random.randint(1, 10)}", name="/api/products/[id]")
            browser_actions.add(1)
            think(ctx, 1, 3)

        if random.random() < 0.3:
            term = random.choice(["laptop", "phone", "headphones", "tablet"])
            ctx.http.get("/api/products", params={"search": term})
            browser_actions.add(1)
            think(ctx, 1, 3)

    conversion_rate.add(0)
    think(ctx, 1, 3)


def shopper_behavior(ctx, data):
    with ctx.group("Shopper Session"):
        token = login(ctx, user_email(ctx.vu_id), data["password"])
        if token is None:
            return
        headers = auth_headers(token)
        shopper_actions.add(1)
        ctx.sleep(1)

        products = _product_list(get_products(ctx, {"page": 1, "limit": 20}, headers))
        shopper_actions.add(1)
        think(ctx, 1, 3)

        for product in products[: random.randint(2, 4)]:
            get_product(ctx, product["id"], headers)
            shopper_actions.add(1)
            think(ctx, 1, 3)

        for product in products[: random.randint(1, 2)]:
            add_to_cart(ctx, product["id"], 1, headers)
            shopper_actions.add(1)
            ctx.sleep(1)

        # Look at the cart, then abandon it.
        ctx.http.get("/api/cart", headers=headers, tags={"type": "read"})
        shopper_actions.add(1)

    conversion_rate.add(0)
    think(ctx, 2, 5)


def buyer_behavior(ctx, data):
    converted = False

    with ctx.group("Buyer Session"):
        token = login(ctx, user_email(ctx.vu_id), data["password"])
        if token is not None:
            headers = auth_headers(token)
            buyer_actions.add(1)
            ctx.sleep(1)

            products = _product_list(get_products(ctx, {"page": 1, "limit": 10}, headers))
            buyer_actions.add(1)
            ctx.sleep(1)

            if products:
                product = random.choice(products)
                add_to_cart(ctx, product["id"], 1, headers)
                buyer_actions.add(1)
                ctx.sleep(1)

                ctx.http.get("/api/cart", headers=headers, tags={"type": "read"})
                buyer_actions.add(1)
                ctx.sleep(1)

                response = ctx.http.post("/api/orders", json={}, headers=headers, tags={"type": "write"})
                if response.status == 201:
                    converted = True
                    buyer_actions.add(1)

    conversion_rate.add(1 if converted else 0)
    think(ctx, 1, 3)


handle_summary = summary_to("reports/mixed-workload-summary.json")

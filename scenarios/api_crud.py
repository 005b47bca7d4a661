"""
Cart CRUD load test.

Runs the full create / read / update / delete lifecycle on the cart
under a moderate ramp, timing each operation into its own trend so the
summary shows which one degrades first.  Requests carry an
``operation`` tag as well, so the same split is available through
``http_req_duration{operation:...}``.
"""

from __future__ import annotations

import random
import time
from pathlib import Path

from helpers import auth_headers, clear_cart, login, summary_to

from vuload import Rate, Trend
from vuload.script import load_thresholds_file

create_duration = Trend("crud_create_duration", is_time=True)
read_duration = Trend("crud_read_duration", is_time=True)
update_duration = Trend("crud_update_duration", is_time=True)
delete_duration = Trend("crud_delete_duration", is_time=True)
crud_success = Rate("crud_success_rate")

options = {
    "scenarios": {
        "api_crud": {
            "executor": "ramping-vus",
            "startVUs": 0,
            "stages": [
                {"duration": "30s", "target": 10},
                {"duration": "1m", "target": 25},
                {"duration": "2m", "target": 25},
                {"duration": "30s", "target": 0},
            ],
            "tags": {"testType": "api-crud"},
        },
    },
    "thresholds": {
        **load_thresholds_file(Path(__file__).with_name("thresholds.yml")),
        "crud_create_duration": ["p(95)<300"],
        "crud_read_duration": ["p(95)<200"],
        "crud_update_duration": ["p(95)<300"],
        "crud_delete_duration": ["p(95)<250"],
        "crud_success_rate": ["rate>0.95"],
    },
}


def _timed(trend, call):
    started = time.perf_counter()
    response = call()
    trend.add((time.perf_counter() - started) * 1000)
    return response


def setup(ctx):
    return {"token": login(ctx)}


def default(ctx, data):
    headers = auth_headers(data["token"])
    created_id = None

    with ctx.group("01_Create"):
        response = _timed(create_duration, lambda: ctx.http.post(
            "/api/cart/items",
            json={"productId": str(random.randint(1, 10)), "quantity": random.randint(1, 3)},
            headers=headers,
            tags={"type": "write", "operation": "create"},
        ))
        ok = ctx.check(response, {
            "create status 200/201": lambda r: r.status in (200, 201),
            "create has response body": lambda r: bool(r.body),
        })
        crud_success.add(ok)
        if response.status in (200, 201):
            created_id = response.json("items.0.productId")
        ctx.sleep(0.5)

    with ctx.group("02_Read"):
        response = _timed(read_duration, lambda: ctx.http.get(
            "/api/cart",
            headers=headers,
            tags={"type": "read", "operation": "read"},
        ))
        ok = ctx.check(response, {
            "read status 200": lambda r: r.status == 200,
            "read has items": lambda r: r.json("items") is not None,
        })
        crud_success.add(ok)
        ctx.sleep(0.5)

    with ctx.group("03_Update"):
        if created_id is not None:
            response = _timed(update_duration, lambda: ctx.http.post(
                "/api/cart/items",
                json={"productId": created_id, "quantity": 5},
                headers=headers,
                tags={"type": "write", "operation": "update"},
            ))
            crud_success.add(ctx.check(response, {"update status 200": lambda r: r.status == 200}))
        ctx.sleep(0.5)

    with ctx.group("04_Delete"):
        response = _timed(
            delete_duration,
            lambda: clear_cart(ctx, headers, tags={"operation": "delete"}),
        )
        crud_success.add(response.status in (200, 204))
        ctx.sleep(0.5)

    ctx.sleep(1)


handle_summary = summary_to("reports/api-crud-summary.json")

"""
Authentication stress test.

Three scenarios run against the auth endpoints, partly overlapping:

- ``normal_logins`` -- ramping VUs logging in with think time,
- ``burst_logins`` -- a ramping arrival rate simulating a marketing
  campaign, starting after two minutes; ``429`` answers from the rate
  limiter count as expected behaviour,
- ``token_validation`` -- constant VUs hitting an authenticated endpoint
  with the token obtained in ``setup``.
"""

from __future__ import annotations

import random
import time
from pathlib import Path

from helpers import DEFAULT_PASSWORD, JSON_HEADERS, auth_headers, login, summary_to, user_email

from vuload import Counter, Rate, Trend
from vuload.script import load_thresholds_file

login_success = Counter("auth_login_success")
login_failed = Counter("auth_login_failed")
login_duration = Trend("auth_login_duration", is_time=True)
token_validation = Trend("auth_token_validation", is_time=True)
auth_error_rate = Rate("auth_error_rate")

options = {
    "scenarios": {
        "normal_logins": {
            "executor": "ramping-vus",
            "startVUs": 0,
            "stages": [
                {"duration": "30s", "target": 20},
                {"duration": "1m", "target": 20},
                {"duration": "30s", "target": 0},
            ],
            "exec": "normal_login",
        },
        "burst_logins": {
            "executor": "ramping-arrival-rate",
            "startRate": 1,
            "timeUnit": "1s",
            "preAllocatedVUs": 50,
            "maxVUs": 100,
            "stages": [
                {"duration": "10s", "target": 10},
                {"duration": "20s", "target": 50},
                {"duration": "10s", "target": 10},
            ],
            "exec": "burst_login",
            "startTime": "2m",
        },
        "token_validation": {
            "executor": "constant-vus",
            "vus": 10,
            "duration": "2m",
            "exec": "validate_token",
            "startTime": "30s",
        },
    },
    "thresholds": {
        **load_thresholds_file(Path(__file__).with_name("thresholds.yml")),
        "auth_login_duration": ["p(95)<500", "p(99)<1000"],
        "auth_token_validation": ["p(95)<100"],
        "auth_error_rate": ["rate<0.05"],
    },
}


def setup(ctx):
    return {"token": login(ctx)}


def _timed_login(ctx, email):
    started = time.perf_counter()
    response = ctx.http.post(
        "/api/auth/login",
        json={"email": email, "password": DEFAULT_PASSWORD},
        headers=JSON_HEADERS,
        tags={"type": "auth"},
    )
    login_duration.add((time.perf_counter() - started) * 1000)
    return response


def normal_login(ctx, data):
    with ctx.group("Normal Login Flow"):
        response = _timed_login(ctx, user_email(ctx.vu_id))
        ok = ctx.check(
            response,
            {
                "login successful": lambda r: r.status == 200,
                "has token": lambda r: r.json("token") is not None,
            },
        )
        if ok:
            login_success.add(1)
            auth_error_rate.add(0)
        else:
            login_failed.add(1)
            auth_error_rate.add(1)

    ctx.sleep(random.uniform(1, 3))


def burst_login(ctx, data):
    response = _timed_login(ctx, user_email(ctx.iteration))
    ctx.check(response, {"burst login successful": lambda r: r.status in (200, 429)})

    if response.status == 200:
        login_success.add(1)
        auth_error_rate.add(0)
    elif response.status == 429:
        # Rate limiting is the expected answer to a burst.
        auth_error_rate.add(0)
    else:
        login_failed.add(1)
        auth_error_rate.add(1)


def validate_token(ctx, data):
    if not data["token"]:
        return

    with ctx.group("Token Validation"):
        started = time.perf_counter()
        response = ctx.http.get(
            "/api/products",
            headers=auth_headers(data["token"]),
            tags={"type": "read"},
        )
        token_validation.add((time.perf_counter() - started) * 1000)
        ok = ctx.check(
            response,
            {
                "token accepted": lambda r: r.status == 200,
                "returns data": lambda r: len(r.body) > 0,
            },
        )
        auth_error_rate.add(0 if ok else 1)

    ctx.sleep(0.5)


handle_summary = summary_to("reports/auth-stress-summary.json")

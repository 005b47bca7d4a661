"""
Baseline load test.

Establishes the performance baseline under normal load: ten users ramp
up over a minute, browse for three minutes, then ramp down.  Traffic is
split between listing (50 %), searching (30 %) and filtering (20 %).

Run with::

    vuload run scenarios/baseline.py -e BASE_URL=http://localhost:3000
"""

from __future__ import annotations

import random
from pathlib import Path

from helpers import (
    CATEGORIES,
    SEARCH_TERMS,
    auth_headers,
    get_product,
    get_products,
    login,
    search_products,
    summary_to,
    think,
)

from vuload.script import load_thresholds_file

options = {
    "stages": [
        {"duration": "1m", "target": 10},
        {"duration": "3m", "target": 10},
        {"duration": "1m", "target": 0},
    ],
    "thresholds": load_thresholds_file(Path(__file__).with_name("thresholds.yml")),
}


def setup(ctx):
    # Log in once and share the token with every VU.
    return {"token": login(ctx)}


def default(ctx, data):
    headers = auth_headers(data["token"])
    roll = random.randint(1, 10)

    if roll <= 5:
        get_products(ctx, {"page": random.randint(1, 10), "limit": 20}, headers)
        think(ctx, 1, 3)
        get_product(ctx, random.randint(1, 100), headers)
        think(ctx, 1, 2)
    elif roll <= 8:
        search_products(ctx, random.choice(SEARCH_TERMS), headers)
        think(ctx, 2, 4)
    else:
        get_products(
            ctx,
            {
                "category": random.choice(CATEGORIES),
                "minPrice": random.randint(10, 100),
                "maxPrice": random.randint(200, 500),
            },
            headers,
        )
        think(ctx, 1, 3)


handle_summary = summary_to("reports/baseline-summary.json")

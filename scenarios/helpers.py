"""
Helper utilities for the demo e-commerce load scripts.

Provides the building blocks every scenario in this directory relies on:
authentication, catalogue browsing, cart and checkout calls, each with
its checks attached.  Keeping these in a shared module avoids duplication
across scripts and makes it easy to adjust endpoints or SLAs in one
place.

Every request is tagged with a ``type`` (``auth``, ``read``, ``write`` or
``search``) so ``thresholds.yml`` can hold each class of endpoint to its
own latency budget via sub-metrics such as
``http_req_duration{type:read}``.

Key Concepts Demonstrated:
- Checks attached to every call so failures show up in the summary
- Request ``name`` templates so dynamic URLs aggregate sensibly
- Randomised inputs to defeat server-side caching
"""

from __future__ import annotations

import random
from typing import Any

from vuload.summary import render_text

DEFAULT_EMAIL = "user1@test.com"
DEFAULT_PASSWORD = "password123"

SEARCH_TERMS = ["laptop", "phone", "shirt", "book", "camera"]
CATEGORIES = ["electronics", "clothing", "books", "home", "sports"]

JSON_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


def _safe_json(response: Any, path: str | None = None) -> Any:
    """
    Return the decoded body (or one field of it), ``None`` on bad JSON.

    Error responses may carry non-JSON bodies (HTML error pages, empty
    bodies on timeouts).  Going through this wrapper keeps a broken body
    from raising inside an iteration.
    """
    return response.json(path)


def auth_headers(token: str | None) -> dict[str, str]:
    """
    Build bearer auth headers for API requests.

    Args:
        token: A JWT, or ``None`` for anonymous requests.

    Returns:
        JSON headers, with ``Authorization`` when a token is given.
    """
    if not token:
        return dict(JSON_HEADERS)
    return {**JSON_HEADERS, "Authorization": f"Bearer {token}"}


def user_email(vu_id: int) -> str:
    """Spread virtual users across the 100 seeded accounts."""
    return f"user{(vu_id % 100) + 1}@test.com"


def login(ctx: Any, email: str = DEFAULT_EMAIL, password: str = DEFAULT_PASSWORD) -> str | None:
    """
    Log in and return a bearer token.

    Args:
        ctx: The iteration context.
        email: Seeded account email.
        password: Plain-text password.

    Returns:
        The token on success, or ``None`` if the login failed or the
        response lacked a token.
    """
    response = ctx.http.post(
        "/api/auth/login",
        json={"email": email, "password": password},
        headers=JSON_HEADERS,
        tags={"type": "auth"},
    )
    ok = ctx.check(
        response,
        {
            "login successful": lambda r: r.status == 200,
            "token received": lambda r: _safe_json(r, "token") is not None,
        },
    )
    return _safe_json(response, "token") if ok else None


def register(ctx: Any, email: str, password: str, name: str) -> str | None:
    """Register a new account; returns its token on ``201 Created``."""
    response = ctx.http.post(
        "/api/auth/register",
        json={"email": email, "password": password, "name": name},
        headers=JSON_HEADERS,
        tags={"type": "auth"},
    )
    ctx.check(response, {"registration successful": lambda r: r.status == 201})
    if response.status == 201:
        return _safe_json(response, "token")
    return None


def get_products(
    ctx: Any,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
):
    """List products, optionally filtered / paginated by *params*."""
    response = ctx.http.get(
        "/api/products",
        params=params,
        headers=headers or JSON_HEADERS,
        tags={"type": "read"},
        name="/api/products",
    )
    ctx.check(
        response,
        {
            "products fetched": lambda r: r.status == 200,
            "has data": lambda r: _safe_json(r, "data") is not None,
        },
    )
    return response


def get_product(ctx: Any, product_id: Any, headers: dict[str, str] | None = None):
    response = ctx.http.get(
        f"/api/products/{product_id}",
        headers=headers or JSON_HEADERS,
        tags={"type": "read"},
        name="/api/products/[id]",
    )
    ctx.check(response, {"product fetched": lambda r: r.status == 200})
    return response


def search_products(ctx: Any, query: str, headers: dict[str, str] | None = None):
    response = ctx.http.get(
        "/api/search",
        params={"q": query},
        headers=headers or JSON_HEADERS,
        tags={"type": "search"},
        name="/api/search",
    )
    ctx.check(response, {"search successful": lambda r: r.status == 200})
    return response


def add_to_cart(ctx: Any, product_id: Any, quantity: int, headers: dict[str, str]):
    response = ctx.http.post(
        "/api/cart/items",
        json={"productId": product_id, "quantity": quantity},
        headers=headers,
        tags={"type": "write"},
    )
    ctx.check(response, {"item added to cart": lambda r: r.status == 200})
    return response


def get_cart(ctx: Any, headers: dict[str, str]):
    response = ctx.http.get("/api/cart", headers=headers, tags={"type": "read"})
    ctx.check(response, {"cart fetched": lambda r: r.status == 200})
    return response


def clear_cart(ctx: Any, headers: dict[str, str], tags: dict[str, str] | None = None):
    response = ctx.http.delete("/api/cart", headers=headers, tags={"type": "write", **(tags or {})})
    ctx.check(response, {"cart cleared": lambda r: r.status in (200, 204)})
    return response


def checkout(ctx: Any, headers: dict[str, str]):
    """Turn the cart into an order; the API answers ``201`` on success."""
    response = ctx.http.post("/api/orders", json={}, headers=headers, tags={"type": "write"})
    ctx.check(response, {"order created": lambda r: r.status == 201})
    return response


def get_orders(ctx: Any, headers: dict[str, str]):
    response = ctx.http.get("/api/orders", headers=headers, tags={"type": "read"})
    ctx.check(response, {"orders fetched": lambda r: r.status == 200})
    return response


def think(ctx: Any, low: float, high: float) -> None:
    """Pause for a random think time between *low* and *high* seconds."""
    ctx.sleep(random.uniform(low, high))


def summary_to(path: str):
    """
    Build a ``handle_summary`` that writes the JSON summary to *path*
    and still prints the table to stdout.
    """

    def handle_summary(data: dict[str, Any]) -> dict[str, Any]:
        return {path: data, "stdout": render_text(data)}

    return handle_summary

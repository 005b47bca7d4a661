"""
HTTP client used by virtual users.

Each virtual user owns one :class:`HttpClient`, wrapping its own
``requests.Session`` so connections are reused per user the way a real
browser or mobile client would reuse them, and never shared between
users.

Every call is timed from the moment it is issued until the last byte of
the body has been read, and reported to the metrics registry as
``http_reqs``, ``http_req_duration``, ``http_req_waiting``,
``http_req_failed``, ``data_sent`` and ``data_received``.

Transport failures never propagate into the load script: a timeout or a
refused connection comes back as a :class:`Response` with
``status == 0`` and ``error`` set, and counts as a failed request.  The
one exception is cancellation -- once the run (or this virtual user) is
being stopped, the client refuses to issue new calls and raises
:class:`~vuload.exceptions.IterationInterrupted` instead.

Key Concepts Demonstrated:
- One session per virtual user for realistic connection reuse
- Mapping ``requests`` exceptions onto in-band failed responses
- Per-call timeouts independent of the run deadline
- Tagging samples so sub-metric thresholds can select them
"""

from __future__ import annotations

import json as jsonlib
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urljoin

import requests

from vuload.exceptions import IterationInterrupted

logger = logging.getLogger(__name__)

# Error codes reported in the ``error_code`` tag, modelled on k6's.
ERROR_TIMEOUT = 1050
ERROR_CONNECTION = 1200
ERROR_GENERIC = 1000

DEFAULT_HEADERS = {
    "Accept": "application/json",
}


class _Emitter(Protocol):
    def emit(self, name: str, value: float, tags: Mapping[str, str] | None = None) -> None: ...


@dataclass(frozen=True)
class Timings:
    """Timings of one call, in milliseconds."""

    duration: float
    waiting: float


@dataclass
class Response:
    """
    Outcome of one HTTP call.

    Attributes:
        status: HTTP status code, or ``0`` when no response was received.
        headers: Response headers (case-insensitive mapping).
        body: Raw response body.
        timings: Call timings in milliseconds.
        error: Description of the transport failure, if any.
        error_code: Numeric failure class (see module constants).
    """

    method: str
    url: str
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    timings: Timings = field(default_factory=lambda: Timings(0.0, 0.0))
    error: str | None = None
    error_code: int | None = None

    @property
    def status_code(self) -> int:
        return self.status

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self, path: str | None = None) -> Any:
        """
        Decode the body as JSON, optionally walking a dotted *path*.

        ``response.json("data.0.id")`` returns the ``id`` of the first
        element of ``data``.  Returns ``None`` when the body is not JSON or
        the path does not exist, so checks can compare against ``None``
        without a ``try`` block.
        """
        try:
            value: Any = jsonlib.loads(self.body or b"null")
        except ValueError:
            return None
        if path is None:
            return value
        for part in path.split("."):
            if isinstance(value, Mapping):
                value = value.get(part)
            elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
                value = value[int(part)]
            else:
                return None
        return value


class HttpClient:
    """
    Per-virtual-user HTTP client.

    Args:
        emitter: Receives the request metrics (the iteration context
            that adds scenario / group tags).
        base_url: Prefix for relative URLs.
        timeout: Default per-call timeout in seconds.
        user_agent: ``User-Agent`` header sent on every call.
        interrupted: Returns ``True`` once the caller must stop issuing
            calls.
    """

    def __init__(
        self,
        emitter: _Emitter,
        *,
        base_url: str = "",
        timeout: float = 60.0,
        user_agent: str = "vuload",
        interrupted: Callable[[], bool] = lambda: False,
    ) -> None:
        self._emitter = emitter
        self.base_url = base_url
        self.timeout = timeout
        self._interrupted = interrupted
        self._session = requests.Session()
        self._session.headers.update({**DEFAULT_HEADERS, "User-Agent": user_agent})

    def bind(self, emitter: _Emitter) -> None:
        """Report subsequent calls to *emitter* (the current iteration)."""
        self._emitter = emitter

    def close(self) -> None:
        """Close pooled connections; in-flight calls may fail as a result."""
        self._session.close()

    def url_for(self, url: str) -> str:
        if url.startswith(("http://", "https://")) or not self.base_url:
            return url
        return urljoin(self.base_url.rstrip("/") + "/", url.lstrip("/"))

    def request(
        self,
        method: str,
        url: str,
        *,
        body: str | bytes | None = None,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        tags: Mapping[str, str] | None = None,
        name: str | None = None,
    ) -> Response:
        """
        Issue one HTTP call and record its metrics.

        Args:
            method: HTTP method.
            url: Absolute URL, or a path resolved against ``base_url``.
            body: Raw request body.
            json: Object to send as a JSON body (sets ``Content-Type``).
            params: Query-string parameters.
            headers: Extra request headers.
            timeout: Per-call timeout in seconds; defaults to the client's.
            tags: Extra tags for this call's samples (e.g.
                ``{"type": "read"}``).
            name: Value of the ``name`` tag; defaults to the URL, pass a
                template such as ``"/api/products/[id]"`` to group
                dynamic URLs.

        Returns:
            The :class:`Response`; transport failures yield ``status 0``.

        Raises:
            IterationInterrupted: If the virtual user is being stopped.
        """
        if self._interrupted():
            raise IterationInterrupted()

        method = method.upper()
        target = self.url_for(url)
        started = time.perf_counter()
        try:
            raw = self._session.request(
                method=method,
                url=target,
                data=body,
                json=json,
                params=params,
                headers=dict(headers) if headers else None,
                timeout=timeout if timeout is not None else self.timeout,
                allow_redirects=True,
            )
            # ``content`` reads the body to the last byte.
            content = raw.content
            duration = (time.perf_counter() - started) * 1000.0
            response = Response(
                method=method,
                url=raw.url,
                status=raw.status_code,
                headers=raw.headers,
                body=content,
                timings=Timings(duration, raw.elapsed.total_seconds() * 1000.0),
            )
            sent = len(raw.request.body or b"") if raw.request is not None else 0
        except requests.Timeout as exc:
            response = self._failed(method, target, started, f"request timeout: {exc}", ERROR_TIMEOUT)
            sent = 0
        except requests.ConnectionError as exc:
            response = self._failed(method, target, started, f"connection error: {exc}", ERROR_CONNECTION)
            sent = 0
        except requests.RequestException as exc:
            response = self._failed(method, target, started, str(exc), ERROR_GENERIC)
            sent = 0

        if response.status == 0 and self._interrupted():
            # The session was closed under us by a forced stop.
            raise IterationInterrupted()

        self._record(response, sent, name or target, tags)
        return response

    def _failed(self, method: str, url: str, started: float, error: str, code: int) -> Response:
        duration = (time.perf_counter() - started) * 1000.0
        logger.debug("%s %s failed: %s", method, url, error)
        return Response(
            method=method,
            url=url,
            status=0,
            timings=Timings(duration, 0.0),
            error=error,
            error_code=code,
        )

    def _record(
        self,
        response: Response,
        sent: int,
        name: str,
        extra_tags: Mapping[str, str] | None,
    ) -> None:
        tags = {
            "method": response.method,
            "url": response.url,
            "name": name,
            "status": str(response.status),
            "expected_response": "true" if response.ok else "false",
        }
        if response.error_code is not None:
            tags["error_code"] = str(response.error_code)
        if extra_tags:
            tags.update(extra_tags)

        emit = self._emitter.emit
        emit("http_reqs", 1, tags)
        emit("http_req_duration", response.timings.duration, tags)
        emit("http_req_waiting", response.timings.waiting, tags)
        emit("http_req_failed", 0.0 if response.ok else 1.0, tags)
        emit("data_sent", float(sent), tags)
        emit("data_received", float(len(response.body)), tags)

    def get(self, url: str, **kwargs: Any) -> Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> Response:
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs: Any) -> Response:
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs: Any) -> Response:
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> Response:
        return self.request("DELETE", url, **kwargs)

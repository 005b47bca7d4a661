"""
Virtual user runtime.

A :class:`VirtualUser` is one simulated client: a thread of its own, an
HTTP session of its own and a stop event of its own.  It repeatedly calls
the scenario's iteration function with a fresh :class:`IterationContext`
until the scheduler says otherwise, recording ``iterations`` and
``iteration_duration`` for every completed pass.

Suspension points (``ctx.sleep``, every HTTP call and ``ctx.check``)
observe cancellation: once the user is retired or the run is cancelled
they raise :class:`~vuload.exceptions.IterationInterrupted`, which ends the
iteration and is counted in ``interrupted_iterations``.

A script function looks like::

    def default(ctx, data):
        with ctx.group("browse"):
            response = ctx.http.get("/api/products", tags={"type": "read"})
            ctx.check(response, {"status is 200": lambda r: r.status == 200})
        ctx.sleep(1)
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from vuload.config import Config
from vuload.exceptions import IterationInterrupted, StopVirtualUser, TestAborted
from vuload.http import HttpClient
from vuload.metrics import (
    Counter,
    Gauge,
    MetricHandle,
    MetricsRegistry,
    Rate,
    RateSeries,
    SeriesSnapshot,
    Trend,
    bind_emitter,
)

logger = logging.getLogger(__name__)

IterationFunction = Callable[..., Any]

_GROUP_SEPARATOR = "::"


def freeze(value: Any) -> Any:
    """Return a read-only view of JSON-like *value* (dicts and lists)."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, set):
        return frozenset(freeze(item) for item in value)
    return value


class CheckTally:
    """Pass/fail counts per check label, for the end-of-test summary."""

    def __init__(self) -> None:
        self._series: dict[str, RateSeries] = {}
        self._lock = threading.Lock()

    def add(self, label: str, passed: bool) -> None:
        series = self._series.get(label)
        if series is None:
            with self._lock:
                series = self._series.setdefault(label, RateSeries(label))
        series.add(1.0 if passed else 0.0)

    def snapshot(self) -> dict[str, SeriesSnapshot]:
        series = list(self._series.values())
        return {item.name: item.snapshot() for item in series}


@dataclass
class RunState:
    """
    Everything virtual users share for the duration of one run.

    Attributes:
        registry: The run's metrics registry.
        config: Engine configuration class.
        env: Variables passed with ``-e KEY=VALUE`` (plus ``BASE_URL``).
        base_url: Prefix for relative request URLs.
        cancel: Set once the run is being torn down; every virtual user
            observes it at its next suspension point.
        setup_data: Frozen return value of the script's ``setup()``.
        checks: Per-label check outcomes.
        abort_reason: Why the run was aborted, if it was.
    """

    registry: MetricsRegistry
    config: type[Config] = Config
    env: Mapping[str, str] = field(default_factory=dict)
    base_url: str = ""
    cancel: threading.Event = field(default_factory=threading.Event)
    setup_data: Any = None
    checks: CheckTally = field(default_factory=CheckTally)
    abort_reason: str | None = None
    _ids: Iterator[int] = field(default_factory=lambda: itertools.count(1), repr=False)
    _ids_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def next_vu_id(self) -> int:
        with self._ids_lock:
            return next(self._ids)

    def request_abort(self, reason: str) -> None:
        """Cancel the run; the first reason given is kept."""
        if self.abort_reason is None:
            self.abort_reason = reason
            logger.warning("Aborting test run: %s", reason)
        self.cancel.set()

    @property
    def aborted(self) -> bool:
        return self.abort_reason is not None


class IterationContext:
    """
    Handle given to every call of a script function.

    Attributes:
        vu_id: Run-wide id of the virtual user (``0`` for setup and
            teardown).
        iteration: Zero-based iteration number within this virtual user.
        scenario: Name of the scenario being executed.
        env: The run's environment variables.
        http: The virtual user's HTTP client.
    """

    def __init__(self, vu: VirtualUser, iteration: int) -> None:
        self._vu = vu
        self.vu_id = vu.id
        self.iteration = iteration
        self.scenario = vu.scenario_name
        self.env = vu.run.env
        self.http = vu.http
        self._registry = vu.run.registry
        self._base_tags = {"scenario": vu.scenario_name, **vu.tags}
        self._group = ""

    @property
    def group_path(self) -> str:
        return self._group

    @property
    def tags(self) -> dict[str, str]:
        return {**self._base_tags, "group": self._group}

    def emit(self, name: str, value: float, tags: Mapping[str, str] | None = None) -> None:
        """Record one sample tagged with this iteration's scenario and group."""
        merged = self.tags
        if tags:
            merged.update(tags)
        with self._vu.record_lock:
            if self._vu.abandoned:
                return
            self._registry.add(name, value, merged)

    def check(
        self,
        value: Any,
        checks: Mapping[str, Callable[[Any], Any]],
        tags: Mapping[str, str] | None = None,
    ) -> bool:
        """
        Evaluate named predicates against *value*.

        Each label records one sample of the ``checks`` rate tagged
        ``check=<label>``.  A predicate that raises counts as a failure.
        Checks never stop the iteration; use the return value to branch.

        Returns:
            ``True`` when every predicate passed.
        """
        self._vu.raise_if_interrupted()
        all_passed = True
        for label, predicate in checks.items():
            try:
                passed = bool(predicate(value))
            except Exception:
                logger.debug("Check %r raised on VU %d", label, self.vu_id, exc_info=True)
                passed = False
            all_passed = all_passed and passed
            check_tags = {"check": label}
            if tags:
                check_tags.update(tags)
            self.emit("checks", 1.0 if passed else 0.0, check_tags)
            if not self._vu.abandoned:
                self._vu.run.checks.add(label, passed)
        return all_passed

    def sleep(self, seconds: float) -> None:
        """Suspend this virtual user only; raises if it is cancelled meanwhile."""
        self._vu.sleep(seconds)

    @contextmanager
    def group(self, name: str) -> Iterator[None]:
        """Tag samples emitted inside the block with ``group=::outer::name``."""
        previous = self._group
        self._group = f"{previous}{_GROUP_SEPARATOR}{name}"
        try:
            yield
        finally:
            self._group = previous

    def _handle(self, cls: type[MetricHandle], name: str, is_time: bool) -> MetricHandle:
        handle = cls(name, is_time=is_time)
        self._registry.declare(name, cls.type, handle.contains)
        return handle

    def counter(self, name: str) -> MetricHandle:
        return self._handle(Counter, name, False)

    def gauge(self, name: str) -> MetricHandle:
        return self._handle(Gauge, name, False)

    def rate(self, name: str) -> MetricHandle:
        return self._handle(Rate, name, False)

    def trend(self, name: str, is_time: bool = False) -> MetricHandle:
        return self._handle(Trend, name, is_time)

    def abort(self, reason: str = "aborted by script") -> None:
        """Abort the whole test run, ending this iteration immediately."""
        self._vu.run.request_abort(reason)
        raise TestAborted(reason)


class VirtualUser:
    """
    One simulated user running on its own thread.

    Args:
        vu_id: Run-wide id.
        run: Shared run state.
        scenario_name: Scenario this user belongs to.
        tags: Scenario tags added to every sample.
        lifecycle: ``True`` for the setup/teardown user, which ignores
            run cancellation so ``teardown`` can still issue requests.
    """

    def __init__(
        self,
        vu_id: int,
        run: RunState,
        scenario_name: str,
        tags: Mapping[str, str] | None = None,
        lifecycle: bool = False,
    ) -> None:
        self.id = vu_id
        self.run = run
        self.scenario_name = scenario_name
        self.tags = dict(tags or {})
        self._lifecycle = lifecycle
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.iterations = 0
        # Serialises recording against abandon().
        self.record_lock = threading.RLock()
        self.abandoned = False
        self._current: IterationContext | None = None
        self.http = HttpClient(
            _NullEmitter(),
            base_url=run.base_url,
            timeout=run.config.HTTP_TIMEOUT,
            user_agent=run.config.USER_AGENT,
            interrupted=lambda: self.interrupted,
        )

    def __repr__(self) -> str:
        return f"VirtualUser(id={self.id}, scenario={self.scenario_name!r})"

    @property
    def interrupted(self) -> bool:
        if self._stop.is_set():
            return True
        return not self._lifecycle and self.run.cancel.is_set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def raise_if_interrupted(self) -> None:
        if not self.interrupted:
            return
        if self.run.aborted and not self._lifecycle:
            raise TestAborted(self.run.abort_reason)
        raise IterationInterrupted()

    def sleep(self, seconds: float) -> None:
        self.raise_if_interrupted()
        if seconds <= 0:
            return
        deadline = time.monotonic() + seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            # Wake on either our stop event or the run-wide cancel event.
            if self._stop.wait(min(remaining, 0.05)):
                break
            if not self._lifecycle and self.run.cancel.is_set():
                break
        self.raise_if_interrupted()

    def stop(self) -> None:
        """Retire this user at its next suspension point."""
        self._stop.set()

    def close(self) -> None:
        """Force-stop: interrupt the user and drop its connections."""
        self._stop.set()
        self.http.close()

    def abandon(self) -> None:
        """
        Give up on a user stuck in a call that cannot be interrupted.

        The iteration in flight is counted in ``interrupted_iterations``
        now; whatever the thread records once the call returns is
        discarded.
        """
        with self.record_lock:
            if self.abandoned:
                return
            if self._current is not None:
                self._current.emit("interrupted_iterations", 1)
                self._current = None
            self.abandoned = True
        self.close()

    def call(self, fn: IterationFunction, *args: Any) -> Any:
        """
        Call a lifecycle function (``setup``/``teardown``) as this user.

        Exceptions propagate to the caller.
        """
        ctx = IterationContext(self, self.iterations)
        self.http.bind(ctx)
        bind_emitter(ctx)
        try:
            return fn(ctx, *args)
        finally:
            bind_emitter(None)

    def run_iteration(self, fn: IterationFunction) -> bool:
        """
        Run one iteration of *fn*.

        Returns:
            ``False`` when this user must not start another iteration
            (interrupted or retired by the script).
        """
        ctx = IterationContext(self, self.iterations)
        self.iterations += 1
        self.http.bind(ctx)
        bind_emitter(ctx)
        with self.record_lock:
            self._current = ctx
        keep_running = True
        started = time.perf_counter()
        try:
            fn(ctx, self.run.setup_data)
        except IterationInterrupted:
            with self.record_lock:
                self._current = None
                ctx.emit("interrupted_iterations", 1)
            return False
        except StopVirtualUser:
            logger.info("VU %d retired itself in scenario %s", self.id, self.scenario_name)
            keep_running = False
        except Exception:
            logger.warning(
                "VU %d iteration %d in scenario %s raised",
                self.id,
                ctx.iteration,
                self.scenario_name,
                exc_info=True,
            )
            ctx.emit("iteration_errors", 1)
        finally:
            bind_emitter(None)

        with self.record_lock:
            self._current = None
            ctx.emit("iterations", 1)
            ctx.emit("iteration_duration", (time.perf_counter() - started) * 1000.0)
        return keep_running

    def start(self, fn: IterationFunction, next_iteration: Callable[[], bool]) -> None:
        """
        Start the user's thread.

        Args:
            fn: The scenario's iteration function.
            next_iteration: Called before every iteration; blocks until the
                next iteration may start and returns ``False`` when the
                user should exit instead.
        """
        self._thread = threading.Thread(
            target=self._loop,
            args=(fn, next_iteration),
            name=f"vu-{self.id}",
            daemon=True,
        )
        self._thread.start()

    def _loop(self, fn: IterationFunction, next_iteration: Callable[[], bool]) -> None:
        try:
            while not self.interrupted and next_iteration():
                if self.interrupted:
                    break
                if not self.run_iteration(fn):
                    break
        finally:
            self.http.close()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the thread; returns ``True`` once it has exited."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()


class _NullEmitter:
    def emit(self, name: str, value: float, tags: Mapping[str, str] | None = None) -> None:
        raise RuntimeError("HTTP calls are only allowed inside an iteration")


def declare_custom_metric(registry: MetricsRegistry, handle: MetricHandle) -> None:
    """Declare the series behind a module-level metric handle."""
    registry.declare(handle.name, handle.type, handle.contains)


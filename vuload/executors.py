"""
Scenario scheduler.

Each scenario gets one executor, and each executor runs a control loop
on its own thread that drives a population of virtual users to follow
the scenario's target curve:

- **constant-vus / ramping-vus** reconcile the live VU count with
  ``floor(curve(t))`` every scheduler tick, spawning new users or retiring
  the most recently started ones.
- **per-vu-iterations / shared-iterations** start a fixed set of users
  that loop until their quota (or the shared pool) is used up or
  ``max_duration`` elapses.
- **constant-arrival-rate / ramping-arrival-rate** start iterations at
  the instants where the integrated rate curve crosses each integer,
  handing every arrival to an idle user from a pool.  When no user is
  idle and the pool is already at ``max_vus`` the arrival is dropped and
  counted in ``dropped_iterations``.

Once the curve is over, users get ``graceful_stop`` seconds to finish the
iteration they are in.  Whatever is still running after that is
interrupted by closing its session and setting its stop event.  A user
still blocked in a request shortly afterwards is abandoned: its iteration
is counted as interrupted and its late samples are dropped.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
import time
from collections import deque
from collections.abc import Callable

from vuload.profiles import (
    PerVUIterations,
    Scenario,
    SharedIterations,
    _ArrivalRate,
)
from vuload.vu import IterationFunction, RunState, VirtualUser

logger = logging.getLogger(__name__)

# Rounding slack when flooring interpolated VU targets.
_EPSILON = 1e-9

# How long interrupted users get, in total, to record their interruption.
_INTERRUPT_JOIN = 0.25


class Executor:
    """
    Base executor: owns the scenario's users and the stop protocol.

    Args:
        scenario: The scenario to execute.
        run: Shared run state.
        fn: The scenario's iteration function.
    """

    def __init__(self, scenario: Scenario, run: RunState, fn: IterationFunction) -> None:
        self.scenario = scenario
        self.run = run
        self.fn = fn
        self._vus: list[VirtualUser] = []
        self._lock = threading.Lock()
        # Set to end the curve early (abort or hard deadline).
        self._halt = threading.Event()
        # Set once no new iteration may start.
        self._ending = threading.Event()
        self.finished = threading.Event()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.scenario.name!r})"

    @property
    def graceful_stop(self) -> float:
        if self.scenario.graceful_stop is not None:
            return self.scenario.graceful_stop
        return self.run.config.GRACEFUL_STOP

    @property
    def tick(self) -> float:
        return self.run.config.SCHEDULER_TICK

    @property
    def active_vus(self) -> int:
        """Users currently allowed to run iterations."""
        with self._lock:
            return sum(1 for vu in self._vus if not vu.interrupted and vu.running)

    @property
    def allocated_vus(self) -> int:
        """Users whose threads are alive, busy or idle."""
        with self._lock:
            return sum(1 for vu in self._vus if vu.running)

    def wait_for_start(self, delay: float) -> bool:
        """Wait out the scenario's start offset; ``False`` if halted meanwhile."""
        return not self._wait(delay)

    def execute(self) -> None:
        """Run the scenario to completion (blocking)."""
        logger.info(
            "Scenario %s starting (%s, up to %d VUs)",
            self.scenario.name,
            self.scenario.executor,
            self.scenario.max_vus,
        )
        started = time.monotonic()
        try:
            self._drive()
            self._wind_down(force=self.run.cancel.is_set())
        finally:
            self.finished.set()
        logger.info(
            "Scenario %s finished after %.1fs", self.scenario.name, time.monotonic() - started
        )

    def stop(self) -> None:
        """End the curve now; in-flight iterations still get their grace period."""
        self._halt.set()

    def _drive(self) -> None:
        raise NotImplementedError

    def _may_continue(self) -> bool:
        return not self._ending.is_set()

    def _spawn(self, next_iteration: Callable[[VirtualUser], bool] | None = None) -> VirtualUser:
        vu = VirtualUser(
            self.run.next_vu_id(),
            self.run,
            self.scenario.name,
            self.scenario.tags,
        )
        with self._lock:
            self._vus.append(vu)
        if next_iteration is None:
            vu.start(self.fn, self._may_continue)
        else:
            vu.start(self.fn, lambda: next_iteration(vu))
        return vu

    def _wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; returns ``True`` if the executor was halted."""
        if seconds > 0:
            return self._halt.wait(seconds)
        return self._halt.is_set()

    def _release_idle(self) -> None:
        """Hook for executors whose users block waiting for work."""

    def _wind_down(self, force: bool) -> None:
        self._ending.set()
        self._release_idle()
        with self._lock:
            vus = list(self._vus)

        if not force:
            deadline = time.monotonic() + self.graceful_stop
            for vu in vus:
                vu.join(max(deadline - time.monotonic(), 0.0))

        stragglers = [vu for vu in vus if vu.running]
        if stragglers:
            logger.info(
                "Scenario %s: interrupting %d VUs still running after %.1fs grace",
                self.scenario.name,
                len(stragglers),
                0.0 if force else self.graceful_stop,
            )
        for vu in stragglers:
            vu.close()
        deadline = time.monotonic() + _INTERRUPT_JOIN
        for vu in stragglers:
            vu.join(max(deadline - time.monotonic(), 0.0))

        # Still blocked inside a request or other call we cannot interrupt.
        stuck = [vu for vu in stragglers if vu.running]
        for vu in stuck:
            vu.abandon()
        if stuck:
            logger.warning(
                "Scenario %s: abandoned %d VUs stuck in an uninterruptible call",
                self.scenario.name,
                len(stuck),
            )


class VUCurveExecutor(Executor):
    """constant-vus and ramping-vus."""

    def _drive(self) -> None:
        curve = self.scenario.curve()
        started = time.monotonic()
        while True:
            elapsed = time.monotonic() - started
            if elapsed >= curve.duration:
                break
            target = math.floor(curve.value_at(elapsed) + _EPSILON)
            self._reconcile(target)
            if self._wait(min(self.tick, curve.duration - elapsed)):
                break

    def _reconcile(self, target: int) -> None:
        with self._lock:
            # Forget users whose threads have exited.
            self._vus = [vu for vu in self._vus if vu.running]
            live = [vu for vu in self._vus if not vu.interrupted]
        if len(live) > target:
            # Retire the most recently started users first.
            for vu in live[target:]:
                vu.stop()
            logger.debug("Scenario %s: retired %d VUs", self.scenario.name, len(live) - target)
        elif len(live) < target:
            for _ in range(target - len(live)):
                self._spawn()
            logger.debug("Scenario %s: started %d VUs", self.scenario.name, target - len(live))


class PerVUIterationsExecutor(Executor):
    """per-vu-iterations: every user runs exactly ``iterations`` iterations."""

    scenario: PerVUIterations

    def _drive(self) -> None:
        quota = self.scenario.iterations
        started_counts: dict[int, int] = {}

        def next_iteration(vu: VirtualUser) -> bool:
            if not self._may_continue():
                return False
            done = started_counts.get(vu.id, 0)
            if done >= quota:
                return False
            started_counts[vu.id] = done + 1
            return True

        for _ in range(self.scenario.vus):
            self._spawn(next_iteration)
        self._wait_for_users(self.scenario.max_duration)

    def _wait_for_users(self, max_duration: float) -> None:
        deadline = time.monotonic() + max_duration
        with self._lock:
            vus = list(self._vus)
        for vu in vus:
            while not vu.join(self.tick):
                if self._halt.is_set() or time.monotonic() >= deadline:
                    return


class SharedIterationsExecutor(PerVUIterationsExecutor):
    """shared-iterations: users draw from one pool of ``iterations``."""

    scenario: SharedIterations

    def _drive(self) -> None:
        remaining = self.scenario.iterations
        pool_lock = threading.Lock()

        def next_iteration(vu: VirtualUser) -> bool:
            nonlocal remaining
            if not self._may_continue():
                return False
            with pool_lock:
                if remaining <= 0:
                    return False
                remaining -= 1
                return True

        for _ in range(min(self.scenario.vus, self.scenario.iterations)):
            self._spawn(next_iteration)
        self._wait_for_users(self.scenario.max_duration)


class ArrivalRateExecutor(Executor):
    """
    constant-arrival-rate and ramping-arrival-rate.

    Users sit idle in a pool, each blocked on its own inbox.  The control
    loop pushes ``True`` into an idle user's inbox for every arrival, and
    ``False`` once the scenario is over.
    """

    scenario: _ArrivalRate

    def __init__(self, scenario: Scenario, run: RunState, fn: IterationFunction) -> None:
        super().__init__(scenario, run, fn)
        self._idle: deque[VirtualUser] = deque()
        self._inboxes: dict[int, queue.SimpleQueue[bool]] = {}
        self.dropped = 0

    def _spawn_pooled(self, with_work: bool = False) -> VirtualUser:
        """Add a user to the pool, either idle or already serving an arrival."""
        vu = VirtualUser(self.run.next_vu_id(), self.run, self.scenario.name, self.scenario.tags)
        inbox: queue.SimpleQueue[bool] = queue.SimpleQueue()
        self._inboxes[vu.id] = inbox
        first_call = True

        def next_iteration() -> bool:
            nonlocal first_call
            if first_call:
                first_call = False
                return True if with_work else inbox.get()
            with self._lock:
                if self._ending.is_set():
                    return False
                self._idle.append(vu)
            return inbox.get()

        with self._lock:
            self._vus.append(vu)
            if not with_work:
                self._idle.append(vu)
        vu.start(self.fn, next_iteration)
        return vu

    def _drive(self) -> None:
        for _ in range(self.scenario.pre_allocated_vus):
            self._spawn_pooled()

        curve = self.scenario.curve()
        started = time.monotonic()
        for offset in curve.arrival_times():
            if self._wait(started + offset - time.monotonic()):
                return
            self._dispatch()
        self._wait(started + curve.duration - time.monotonic())

        if self.dropped:
            logger.info("Scenario %s dropped %d iterations", self.scenario.name, self.dropped)

    def _dispatch(self) -> None:
        with self._lock:
            vu = self._idle.popleft() if self._idle else None
            can_grow = len(self._vus) < self.scenario.max_vus
        if vu is None:
            if not can_grow:
                self.dropped += 1
                self.run.registry.add(
                    "dropped_iterations",
                    1,
                    {"scenario": self.scenario.name, **self.scenario.tags},
                )
                return
            self._spawn_pooled(with_work=True)
            logger.debug("Scenario %s grew its pool to %d VUs", self.scenario.name, self.allocated_vus)
            return
        self._inboxes[vu.id].put(True)

    def _release_idle(self) -> None:
        with self._lock:
            vus = list(self._vus)
        for vu in vus:
            self._inboxes[vu.id].put(False)

    @property
    def active_vus(self) -> int:
        with self._lock:
            idle = len(self._idle)
            alive = sum(1 for vu in self._vus if vu.running and not vu.interrupted)
        return max(alive - idle, 0)


_EXECUTOR_CLASSES: dict[str, type[Executor]] = {
    "constant-vus": VUCurveExecutor,
    "ramping-vus": VUCurveExecutor,
    "per-vu-iterations": PerVUIterationsExecutor,
    "shared-iterations": SharedIterationsExecutor,
    "constant-arrival-rate": ArrivalRateExecutor,
    "ramping-arrival-rate": ArrivalRateExecutor,
}


def create_executor(scenario: Scenario, run: RunState, fn: IterationFunction) -> Executor:
    """Instantiate the executor implementing *scenario*'s executor type."""
    return _EXECUTOR_CLASSES[scenario.executor](scenario, run, fn)

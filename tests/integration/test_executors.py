"""
Executor scheduling tests.

Each test runs one executor directly on a background thread and watches
its virtual-user population while it follows the target curve.  The
iteration functions issue no HTTP calls so timing depends only on the
scheduler.

Key Concepts Demonstrated:
- Polling live state of a concurrent system with a tolerance
- Asserting on counters after the executor has wound down
"""

import math
import threading
import time

import pytest

from vuload.config import TestingConfig
from vuload.executors import ArrivalRateExecutor, create_executor
from vuload.metrics import MetricsRegistry
from vuload.profiles import (
    ConstantArrivalRate,
    ConstantVUs,
    PerVUIterations,
    RampingVUs,
    SharedIterations,
    Stage,
)
from vuload.vu import RunState

pytestmark = pytest.mark.integration


def _short_iteration(ctx, data):
    ctx.sleep(0.02)


def _start(executor):
    thread = threading.Thread(target=executor.execute, daemon=True)
    thread.start()
    return thread


@pytest.fixture
def state():
    return RunState(registry=MetricsRegistry(TestingConfig.TREND_MAX_SAMPLES), config=TestingConfig)


def _count(state, key):
    return state.registry.snapshot()[key].count


class TestVUCurveExecutor:
    """constant-vus and ramping-vus."""

    def test_ramping_vus_follow_the_curve(self, state):
        """
        Test that the active VU count tracks floor(target) while ramping.

        Arrange: Ramp 0 -> 4 VUs over 1s and back to 0 over 1s
        Act: Poll active_vus while the executor runs
        Assert: Never more than one VU above the target, and the peak is reached
        """
        # Arrange
        scenario = RampingVUs(name="ramp", start_vus=0, stages=(Stage(1.0, 4), Stage(1.0, 0)))
        executor = create_executor(scenario, state, _short_iteration)
        curve = scenario.curve()

        # Act
        started = time.monotonic()
        thread = _start(executor)
        observed = []
        while thread.is_alive() and time.monotonic() - started < 2.0:
            elapsed = time.monotonic() - started
            observed.append((math.floor(curve.value_at(elapsed) + 1e-9), executor.active_vus))
            time.sleep(0.05)
        thread.join(timeout=5)

        # Assert
        assert not thread.is_alive()
        assert all(active <= target + 1 for target, active in observed)
        assert max(active for _, active in observed) >= 3
        assert executor.active_vus == 0
        assert _count(state, "iterations") > 0

    def test_constant_vus_hold_their_count(self, state):
        scenario = ConstantVUs(name="steady", vus=3, duration_s=0.5)
        executor = create_executor(scenario, state, _short_iteration)

        thread = _start(executor)
        time.sleep(0.25)
        active_midway = executor.active_vus
        thread.join(timeout=5)

        assert active_midway == 3
        assert executor.finished.is_set()
        assert _count(state, "interrupted_iterations") == 0

    def test_exited_users_are_forgotten(self, state):
        # Arrange
        scenario = ConstantVUs(name="churn", vus=3, duration_s=1)
        executor = create_executor(scenario, state, _short_iteration)
        executor._reconcile(3)
        executor._reconcile(0)
        with executor._lock:
            retired = list(executor._vus)
        assert all(vu.join(timeout=5) for vu in retired)

        # Act
        executor._reconcile(2)

        # Assert
        assert len(executor._vus) == 2
        assert executor.active_vus == 2
        executor._wind_down(force=True)


class TestIterationExecutors:
    """per-vu-iterations and shared-iterations."""

    def test_per_vu_iterations_run_exact_quota(self, state):
        seen = []
        lock = threading.Lock()

        def iteration(ctx, data):
            with lock:
                seen.append(ctx.vu_id)

        executor = create_executor(PerVUIterations(vus=4, iterations=5), state, iteration)

        executor.execute()

        assert len(seen) == 20
        assert sorted(seen.count(vu_id) for vu_id in set(seen)) == [5, 5, 5, 5]

    def test_shared_iterations_share_the_pool(self, state):
        executor = create_executor(SharedIterations(vus=3, iterations=10), state, _short_iteration)

        executor.execute()

        assert _count(state, "iterations") == 10
        assert executor.allocated_vus == 0

    def test_more_vus_than_iterations_starts_only_needed_users(self, state):
        executor = create_executor(SharedIterations(vus=10, iterations=2), state, _short_iteration)

        executor.execute()

        assert _count(state, "iterations") == 2
        assert state.next_vu_id() == 3


class TestArrivalRateExecutor:
    """constant-arrival-rate pool behaviour."""

    def test_idle_pool_serves_every_arrival(self, state):
        scenario = ConstantArrivalRate(
            name="rate", rate=20, duration_s=0.5, pre_allocated_vus=2, max_vus_limit=2
        )
        executor = create_executor(scenario, state, _short_iteration)

        executor.execute()

        assert isinstance(executor, ArrivalRateExecutor)
        assert executor.dropped == 0
        assert _count(state, "iterations") == 10

    def test_pool_grows_up_to_max_vus(self, state):
        def slow(ctx, data):
            ctx.sleep(0.3)

        scenario = ConstantArrivalRate(
            name="grow", rate=20, duration_s=0.5, pre_allocated_vus=1, max_vus_limit=4
        )
        executor = create_executor(scenario, state, slow)

        executor.execute()

        assert state.next_vu_id() == 5
        assert executor.dropped > 0
        assert _count(state, "iterations") + executor.dropped == 10

    def test_halt_stops_new_arrivals(self, state):
        scenario = ConstantArrivalRate(
            name="halt", rate=50, duration_s=10, pre_allocated_vus=5, max_vus_limit=5
        )
        executor = create_executor(scenario, state, _short_iteration)

        thread = _start(executor)
        time.sleep(0.2)
        executor.stop()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert _count(state, "iterations") < 50

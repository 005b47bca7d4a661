"""
Test run orchestration.

:class:`Runner` takes a loaded script through one complete run:

1. build the scenarios and validate thresholds against the declared
   metrics, so a typo fails before any load is generated,
2. call ``setup()`` once on a dedicated lifecycle user,
3. start one executor thread per scenario, each after its
   ``startTime``,
4. every ``THRESHOLD_INTERVAL`` evaluate the thresholds and cancel the
   run when an ``abortOnFail`` threshold fails,
5. wait for the scenarios (bounded by a hard deadline), call
   ``teardown(data)``, evaluate the thresholds one final time and build
   the summary.

Only the final evaluation decides whether the run passed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from vuload.config import Config, get_config
from vuload.exceptions import ScriptError, SetupError
from vuload.executors import Executor, create_executor
from vuload.metrics import MetricsRegistry, SampleOutput, SeriesSnapshot
from vuload.profiles import Scenario, scenarios_from_options
from vuload.script import LoadScript
from vuload.summary import build_summary
from vuload.thresholds import ThresholdEvaluator, ThresholdResult, all_passed, parse_thresholds
from vuload.vu import RunState, VirtualUser, declare_custom_metric, freeze

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """
    Outcome of one run.

    Attributes:
        summary: The end-of-test summary document.
        threshold_results: Final threshold evaluation.
        aborted: Whether the run was cancelled before completing.
        abort_reason: Why it was cancelled.
        duration_s: Wall-clock duration including setup and teardown.
        snapshot: Final metrics snapshot.
        teardown_failed: ``teardown()`` raised.
    """

    summary: dict[str, Any]
    threshold_results: list[ThresholdResult]
    aborted: bool = False
    abort_reason: str | None = None
    duration_s: float = 0.0
    snapshot: dict[str, SeriesSnapshot] = field(default_factory=dict)
    teardown_failed: bool = False

    @property
    def passed(self) -> bool:
        return all_passed(self.threshold_results)


class Runner:
    """
    Runs a :class:`~vuload.script.LoadScript`.

    Args:
        script: The loaded script (options already merged with overrides).
        config: Engine configuration class; defaults to ``get_config()``.
        env: Script environment (``-e KEY=VALUE``).  ``BASE_URL`` is added
            when missing.
        base_url: Base URL for relative requests; falls back to
            ``env["BASE_URL"]`` and then ``config.BASE_URL``.
        outputs: Sample outputs to stream to.
    """

    def __init__(
        self,
        script: LoadScript,
        *,
        config: type[Config] | None = None,
        env: Mapping[str, str] | None = None,
        base_url: str | None = None,
        outputs: Iterable[SampleOutput] = (),
    ) -> None:
        self.script = script
        self.config = config or get_config()
        self.env = dict(env or {})
        self.base_url = base_url or self.env.get("BASE_URL") or self.config.BASE_URL
        self.env.setdefault("BASE_URL", self.base_url)
        self.outputs = list(outputs)

    # -----------------------------------------------------------------
    # Preparation
    # -----------------------------------------------------------------

    def prepare(self) -> tuple[list[Scenario], MetricsRegistry, ThresholdEvaluator]:
        """
        Build scenarios, the registry and the threshold evaluator.

        Raises:
            OptionsError: On an invalid load profile.
            ScriptError: If an exec function is missing or a custom
                metric clashes with a built-in one.
            ThresholdSyntaxError: On invalid thresholds.
        """
        options = self.script.options
        scenarios = scenarios_from_options(options)
        for scenario in scenarios:
            self.script.function(scenario.exec_name)

        registry = MetricsRegistry(self.config.TREND_MAX_SAMPLES, self.outputs)
        for handle in self.script.metrics:
            try:
                declare_custom_metric(registry, handle)
            except ValueError as exc:
                raise ScriptError(str(exc)) from exc

        evaluator = ThresholdEvaluator(parse_thresholds(options.get("thresholds")))
        evaluator.validate(registry.type_of)
        for key in evaluator.metric_keys:
            registry.declare_submetric(key)
        return scenarios, registry, evaluator

    # -----------------------------------------------------------------
    # Run
    # -----------------------------------------------------------------

    def run(self) -> RunResult:
        """
        Execute the whole test.

        Raises:
            SetupError: If ``setup()`` raised; no load is generated.
            VuloadError: On any preparation error (see :meth:`prepare`).
        """
        scenarios, registry, evaluator = self.prepare()
        state = RunState(
            registry=registry,
            config=self.config,
            env=MappingProxyType(self.env),
            base_url=self.base_url,
        )
        started = time.monotonic()

        lifecycle = VirtualUser(0, state, "setup", lifecycle=True)
        if self.script.setup is not None:
            logger.info("Running setup()")
            try:
                data = lifecycle.call(self.script.setup)
            except Exception as exc:
                lifecycle.http.close()
                raise SetupError(f"setup() raised {type(exc).__name__}: {exc}") from exc
            state.setup_data = freeze(data)

        executors = [
            create_executor(scenario, state, self.script.function(scenario.exec_name))
            for scenario in scenarios
        ]
        self._execute(executors, state, evaluator, started)

        teardown_failed = False
        if self.script.teardown is not None:
            logger.info("Running teardown()")
            lifecycle.scenario_name = "teardown"
            try:
                lifecycle.call(self.script.teardown, state.setup_data)
            except Exception:
                logger.exception("teardown() raised")
                teardown_failed = True
        lifecycle.http.close()

        duration = time.monotonic() - started
        snapshot = registry.snapshot()
        results = evaluator.evaluate(snapshot, duration)
        for result in results:
            if not result.ok:
                logger.warning(
                    "Threshold %s %s failed (observed %.4g)",
                    result.metric,
                    result.expression,
                    result.observed,
                )

        summary = build_summary(
            snapshot,
            results,
            duration_s=duration,
            aborted=state.aborted,
            abort_reason=state.abort_reason,
            checks=state.checks.snapshot(),
            trend_stats=self.config.SUMMARY_TREND_STATS,
            options=self.script.options,
        )
        return RunResult(
            summary=summary,
            threshold_results=results,
            aborted=state.aborted,
            abort_reason=state.abort_reason,
            duration_s=duration,
            snapshot=snapshot,
            teardown_failed=teardown_failed,
        )

    def _hard_deadline(self, executors: list[Executor], started: float) -> float:
        latest = max(
            (ex.scenario.start_time + ex.scenario.duration + ex.graceful_stop for ex in executors),
            default=0.0,
        )
        return started + latest + self.config.THRESHOLD_INTERVAL

    def _execute(
        self,
        executors: list[Executor],
        state: RunState,
        evaluator: ThresholdEvaluator,
        started: float,
    ) -> None:
        threads = [
            threading.Thread(
                target=_run_scenario,
                args=(executor,),
                name=f"scenario-{executor.scenario.name}",
                daemon=True,
            )
            for executor in executors
        ]
        for thread in threads:
            thread.start()
        logger.info("Started %d scenario(s) against %s", len(threads), self.base_url)

        deadline = self._hard_deadline(executors, time.monotonic())
        interval = self.config.THRESHOLD_INTERVAL
        next_evaluation = time.monotonic() + interval
        gauges = _VUGauges(state.registry)

        while any(thread.is_alive() for thread in threads):
            now = time.monotonic()
            if now >= deadline and not state.cancel.is_set():
                logger.warning("Hard deadline reached; cancelling remaining iterations")
                state.cancel.set()
            if state.cancel.is_set():
                for executor in executors:
                    executor.stop()
                for thread in threads:
                    thread.join(max(self.config.SCHEDULER_TICK * 10, 1.0))
                break

            gauges.update(executors)
            if evaluator and now >= next_evaluation:
                next_evaluation = now + interval
                self._check_abort(evaluator, state, now - started)
            state.cancel.wait(self.config.SCHEDULER_TICK)

        gauges.update(executors)

    def _check_abort(self, evaluator: ThresholdEvaluator, state: RunState, elapsed: float) -> None:
        results = evaluator.evaluate(state.registry.snapshot(), elapsed)
        failing = evaluator.aborting(results, elapsed)
        if failing:
            first = failing[0]
            state.request_abort(
                f"threshold {first.metric} {first.expression} failed "
                f"(observed {first.observed:.4g})"
            )


def _run_scenario(executor: Executor) -> None:
    if executor.wait_for_start(executor.scenario.start_time):
        executor.execute()
    else:
        executor.finished.set()


class _VUGauges:
    """Publishes ``vus`` / ``vus_max`` when they change."""

    def __init__(self, registry: MetricsRegistry) -> None:
        self._registry = registry
        self._last: tuple[int, int] | None = None

    def update(self, executors: list[Executor]) -> None:
        current = (
            sum(executor.active_vus for executor in executors),
            sum(executor.allocated_vus for executor in executors),
        )
        if current != self._last:
            self._last = current
            self._registry.add("vus", current[0])
            self._registry.add("vus_max", current[1])

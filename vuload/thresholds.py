"""
Pass/fail SLA expressions over aggregated metrics.

A threshold binds an expression such as ``p(95)<500`` or ``rate<0.01`` to
a metric (or sub-metric such as ``http_req_duration{type:read}``).
Thresholds are declared in a script's ``options["thresholds"]``::

    "thresholds": {
        "http_req_duration": ["p(95)<500", "p(99)<1000"],
        "http_req_failed": [{"threshold": "rate<0.01", "abortOnFail": True}],
        "purchase_success": ["count>0"],
    }

Evaluation is a pure function of a metrics snapshot: it never mutates
the registry, so the runner can evaluate as often as it likes.  Only the
final evaluation decides the run's exit status; in-run evaluations exist
to trigger ``abortOnFail``.

Key Concepts Demonstrated:
- Small regex grammar with early, descriptive syntax errors
- Type-checking expressions against metric types before the run
- Side-effect-free evaluation over immutable snapshots
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from vuload.exceptions import OptionsError, ThresholdSyntaxError
from vuload.metrics import MetricType, SeriesSnapshot, parse_metric_key
from vuload.profiles import parse_duration


_EXPRESSION = re.compile(
    r"^\s*(?P<agg>count|rate|value|avg|min|max|med|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<value>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

# Aggregations each metric type can answer; "p" stands for any p(N).
AGGREGATIONS: dict[MetricType, frozenset[str]] = {
    MetricType.COUNTER: frozenset({"count", "rate"}),
    MetricType.GAUGE: frozenset({"value", "min", "max"}),
    MetricType.RATE: frozenset({"rate"}),
    MetricType.TREND: frozenset({"avg", "min", "max", "med", "p"}),
}


@dataclass(frozen=True)
class Threshold:
    """
    One parsed threshold.

    Attributes:
        metric: Metric or sub-metric key the threshold applies to.
        expression: The source text, used as the threshold's label.
        aggregation: Normalised aggregation (``"avg"``, ``"p(95)"``, ...).
        op: Comparison operator.
        limit: Right-hand side of the comparison.
        abort_on_fail: Cancel the run as soon as an in-run evaluation
            fails (after ``delay_abort_eval`` seconds have elapsed).
        delay_abort_eval: Grace period before ``abort_on_fail`` applies.
    """

    metric: str
    expression: str
    aggregation: str
    op: str
    limit: float
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    @property
    def aggregation_kind(self) -> str:
        return "p" if self.aggregation.startswith("p(") else self.aggregation

    def passes(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.limit)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: float
    ok: bool

    @property
    def metric(self) -> str:
        return self.threshold.metric

    @property
    def expression(self) -> str:
        return self.threshold.expression


def parse_expression(metric: str, expression: str, **flags: Any) -> Threshold:
    """
    Parse ``<aggregation> <op> <number>`` into a :class:`Threshold`.

    Raises:
        ThresholdSyntaxError: If the expression does not match the grammar.
    """
    match = _EXPRESSION.match(expression)
    if match is None:
        raise ThresholdSyntaxError(
            f"Invalid threshold {expression!r} on {metric}: expected "
            "'<count|rate|value|avg|min|max|med|p(N)> <op> <number>'"
        )
    aggregation = match.group("agg")
    pct = match.group("pct")
    if pct is not None:
        pct_value = float(pct)
        if pct_value > 100:
            raise ThresholdSyntaxError(f"Percentile out of range in {expression!r} on {metric}")
        aggregation = f"p({pct_value:g})"
    return Threshold(
        metric=metric,
        expression=expression.strip(),
        aggregation=aggregation,
        op=match.group("op"),
        limit=float(match.group("value")),
        **flags,
    )


def parse_thresholds(config: Mapping[str, Any] | None) -> list[Threshold]:
    """
    Parse ``options["thresholds"]`` into a flat list.

    Each metric maps to a string, a list of strings, or a list mixing
    strings and ``{"threshold", "abortOnFail", "delayAbortEval"}`` dicts.
    """
    if not config:
        return []
    if not isinstance(config, Mapping):
        raise ThresholdSyntaxError("'thresholds' must map metric names to expressions")

    thresholds: list[Threshold] = []
    for metric, entries in config.items():
        try:
            parse_metric_key(str(metric))
        except ValueError as exc:
            raise ThresholdSyntaxError(str(exc)) from exc
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        for entry in entries:
            if isinstance(entry, str):
                thresholds.append(parse_expression(str(metric), entry))
                continue
            if not isinstance(entry, Mapping) or "threshold" not in entry:
                raise ThresholdSyntaxError(f"Invalid threshold entry for {metric}: {entry!r}")
            try:
                delay = parse_duration(entry.get("delayAbortEval", 0))
            except OptionsError as exc:
                raise ThresholdSyntaxError(f"{metric}: {exc}") from exc
            thresholds.append(
                parse_expression(
                    str(metric),
                    str(entry["threshold"]),
                    abort_on_fail=bool(entry.get("abortOnFail", False)),
                    delay_abort_eval=delay,
                )
            )
    return thresholds


class ThresholdEvaluator:
    """
    Evaluates a fixed set of thresholds against metric snapshots.

    Args:
        thresholds: The parsed thresholds of the run.
    """

    def __init__(self, thresholds: Iterable[Threshold]) -> None:
        self.thresholds = tuple(thresholds)

    def __bool__(self) -> bool:
        return bool(self.thresholds)

    @property
    def metric_keys(self) -> list[str]:
        return sorted({threshold.metric for threshold in self.thresholds})

    def validate(self, type_of: Callable[[str], MetricType | None]) -> None:
        """
        Check every threshold references a known metric of a fitting type.

        Args:
            type_of: Returns the type of a (parent) metric name, or
                ``None`` when the metric does not exist.

        Raises:
            ThresholdSyntaxError: On unknown metrics or aggregations the
                metric type cannot answer (e.g. ``p(95)`` on a counter).
        """
        for threshold in self.thresholds:
            parent, _selector = parse_metric_key(threshold.metric)
            metric_type = type_of(parent)
            if metric_type is None:
                raise ThresholdSyntaxError(
                    f"Threshold {threshold.expression!r} references unknown metric {parent!r}"
                )
            if threshold.aggregation_kind not in AGGREGATIONS[metric_type]:
                raise ThresholdSyntaxError(
                    f"Aggregation {threshold.aggregation!r} is not supported by "
                    f"{metric_type.value} metric {threshold.metric!r}"
                )

    def evaluate(
        self,
        snapshot: Mapping[str, SeriesSnapshot],
        elapsed: float,
    ) -> list[ThresholdResult]:
        """
        Evaluate all thresholds against *snapshot*.

        A metric with no samples evaluates as zero for every aggregation,
        so ``count>0`` on an empty metric fails while ``count<10`` passes.

        Args:
            snapshot: Metric snapshots keyed by metric/sub-metric key.
            elapsed: Seconds since the run started, used for counter
                ``rate`` (per second).
        """
        results = []
        for threshold in self.thresholds:
            series = snapshot.get(threshold.metric)
            observed = 0.0 if series is None else _observe(series, threshold, elapsed)
            results.append(ThresholdResult(threshold, observed, threshold.passes(observed)))
        return results

    def evaluate_values(self, values: Mapping[str, Mapping[str, float]]) -> list[ThresholdResult]:
        """
        Evaluate against already-aggregated values, e.g. an exported summary.

        Raises:
            ThresholdSyntaxError: If a required aggregation was not exported.
        """
        results = []
        for threshold in self.thresholds:
            metric_values = values.get(threshold.metric, {})
            if metric_values and threshold.aggregation not in metric_values:
                raise ThresholdSyntaxError(
                    f"Summary has no {threshold.aggregation!r} value for {threshold.metric!r}"
                )
            observed = float(metric_values.get(threshold.aggregation, 0.0))
            results.append(ThresholdResult(threshold, observed, threshold.passes(observed)))
        return results

    @staticmethod
    def aborting(results: Iterable[ThresholdResult], elapsed: float) -> list[ThresholdResult]:
        """Failed abort-on-fail results whose delay has passed."""
        return [
            result
            for result in results
            if not result.ok
            and result.threshold.abort_on_fail
            and elapsed >= result.threshold.delay_abort_eval
        ]


def _observe(series: SeriesSnapshot, threshold: Threshold, elapsed: float) -> float:
    if series.type is MetricType.COUNTER and threshold.aggregation == "rate":
        return series.count / elapsed if elapsed > 0 else 0.0
    try:
        return series.aggregate(threshold.aggregation)
    except KeyError as exc:
        raise ThresholdSyntaxError(str(exc)) from exc


def all_passed(results: Iterable[ThresholdResult]) -> bool:
    return all(result.ok for result in results)

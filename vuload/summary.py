"""
End-of-test summary.

:func:`build_summary` turns the final metrics snapshot and threshold
results into a plain dict shaped like k6's ``handleSummary`` data, so the
same document serves three consumers:

- :func:`render_text` prints it as a table for CI logs,
- ``--summary-export`` writes it as JSON,
- a script's ``handle_summary(data)`` receives it and returns a mapping
  of destinations (``stdout``, ``stderr`` or file paths) to content,
  which :func:`write_outputs` writes.

Key Concepts Demonstrated:
- One serialisable document for every report format
- Human-readable summary table printed to stdout for CI logs
- Unit-aware formatting (ms / s, bytes, percentages)
"""

from __future__ import annotations

import json
import sys
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, TextIO

from vuload.metrics import MetricType, SeriesSnapshot, ValueType
from vuload.thresholds import ThresholdResult

_WIDTH = 78


def _trend_values(series: SeriesSnapshot, stats: Iterable[str]) -> dict[str, float]:
    values: dict[str, float] = {}
    for stat in stats:
        if stat == "count":
            values[stat] = series.count
        else:
            values[stat] = series.aggregate(stat)
    return values


def _has_samples(series: SeriesSnapshot) -> bool:
    if series.type is MetricType.GAUGE:
        return any(series.values.values())
    return series.count > 0


def build_summary(
    snapshot: Mapping[str, SeriesSnapshot],
    threshold_results: Iterable[ThresholdResult],
    *,
    duration_s: float,
    aborted: bool = False,
    abort_reason: str | None = None,
    checks: Mapping[str, SeriesSnapshot] | None = None,
    trend_stats: Iterable[str] = ("avg", "min", "med", "max", "p(90)", "p(95)"),
    options: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Build the summary document.

    Metrics that never received a sample are left out unless a threshold
    refers to them.

    Args:
        snapshot: Final metrics snapshot keyed by metric / sub-metric key.
        threshold_results: Final threshold evaluation.
        duration_s: Wall-clock duration of the run.
        aborted: Whether the run was cancelled.
        abort_reason: Why, when it was.
        checks: Per-label check outcomes.
        trend_stats: Aggregates reported for every trend.
        options: The effective script options, echoed for reference.

    Returns:
        A JSON-serialisable dict.
    """
    results = list(threshold_results)
    by_metric: dict[str, list[ThresholdResult]] = {}
    for result in results:
        by_metric.setdefault(result.metric, []).append(result)
    trend_stats = list(trend_stats)

    metrics: dict[str, Any] = {}
    for name in sorted(snapshot):
        series = snapshot[name]
        metric_results = by_metric.get(name, [])
        if not metric_results and not _has_samples(series):
            continue

        if series.type is MetricType.TREND:
            extra = [
                result.threshold.aggregation
                for result in metric_results
                if result.threshold.aggregation not in trend_stats
            ]
            values = _trend_values(series, [*trend_stats, *extra])
        elif series.type is MetricType.COUNTER:
            values = {
                "count": series.count,
                "rate": series.count / duration_s if duration_s > 0 else 0.0,
            }
        elif series.type is MetricType.RATE:
            values = {key: series.values[key] for key in ("rate", "passes", "fails")}
        else:
            values = dict(series.values)

        entry: dict[str, Any] = {
            "type": series.type.value,
            "contains": series.contains.value,
            "values": values,
        }
        if metric_results:
            entry["thresholds"] = {
                result.expression: {"ok": result.ok, "observed": result.observed}
                for result in metric_results
            }
        metrics[name] = entry

    check_list = [
        {
            "name": label,
            "passes": int(item.values["passes"]),
            "fails": int(item.values["fails"]),
        }
        for label, item in sorted((checks or {}).items())
    ]

    return {
        "metrics": metrics,
        "root_group": {"name": "", "path": "", "checks": check_list},
        "state": {
            "testRunDurationMs": duration_s * 1000.0,
            "isAborted": aborted,
            "abortReason": abort_reason,
            "thresholdsPassed": all(result.ok for result in results),
        },
        "options": {"summaryTrendStats": trend_stats, **_jsonable(options or {})},
    }


def _jsonable(options: Mapping[str, Any]) -> dict[str, Any]:
    """Keep only the JSON-representable part of the script options."""
    return json.loads(json.dumps(dict(options), default=str))


def summary_values(summary: Mapping[str, Any]) -> dict[str, dict[str, float]]:
    """Return ``{metric: values}`` from a summary document."""
    return {
        name: dict(entry.get("values", {}))
        for name, entry in summary.get("metrics", {}).items()
    }


# =====================================================================
# Text rendering
# =====================================================================


def format_value(value: float, contains: str, key: str = "") -> str:
    """Format one aggregate with the unit implied by its metric."""
    if key == "rate" and contains != ValueType.DATA.value:
        return f"{value * 100:.2f}%"
    if contains == ValueType.TIME.value:
        if abs(value) >= 1000:
            return f"{value / 1000:.2f}s"
        return f"{value:.2f}ms"
    if contains == ValueType.DATA.value:
        for unit in ("B", "kB", "MB", "GB"):
            if abs(value) < 1000 or unit == "GB":
                return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
            value /= 1000
    if float(value).is_integer():
        return f"{value:.0f}"
    return f"{value:.2f}"


def _metric_line(name: str, entry: Mapping[str, Any]) -> str:
    contains = entry.get("contains", ValueType.DEFAULT.value)
    metric_type = entry.get("type")
    values = entry.get("values", {})
    if metric_type == MetricType.COUNTER.value:
        count = format_value(values.get("count", 0.0), contains)
        rate = values.get("rate", 0.0)
        if contains == ValueType.DATA.value:
            text = f"{count} {format_value(rate, contains)}/s"
        else:
            text = f"{count} {rate:.2f}/s"
    elif metric_type == MetricType.RATE.value:
        text = (
            f"{values.get('rate', 0.0) * 100:.2f}% "
            f"({values.get('passes', 0):.0f} of {values.get('passes', 0) + values.get('fails', 0):.0f})"
        )
    else:
        text = " ".join(f"{key}={format_value(value, contains, key)}" for key, value in values.items())
    return f"  {name:<34}{text}"


def render_text(summary: Mapping[str, Any]) -> str:
    """Render *summary* as a human-readable table."""
    lines = ["Load Test Summary", "-" * _WIDTH]

    checks = summary.get("root_group", {}).get("checks", [])
    if checks:
        lines.append("Checks")
        for check in checks:
            mark = "PASS" if check["fails"] == 0 else "FAIL"
            lines.append(f"  {check['name']:<50}{check['passes']:>8}{check['fails']:>8}{mark:>8}")
        lines.append("-" * _WIDTH)

    metrics = summary.get("metrics", {})
    lines.append("Metrics")
    for name, entry in metrics.items():
        lines.append(_metric_line(name, entry))

    threshold_rows = [
        (name, expression, outcome, entry.get("contains", ValueType.DEFAULT.value))
        for name, entry in metrics.items()
        for expression, outcome in entry.get("thresholds", {}).items()
    ]
    if threshold_rows:
        lines.append("-" * _WIDTH)
        lines.append(f"{'Threshold':<46}{'Actual':>18}{'Status':>12}")
        lines.append("-" * _WIDTH)
        for name, expression, outcome, contains in threshold_rows:
            status = "PASS" if outcome["ok"] else "FAIL"
            key = "rate" if expression.startswith("rate") else ""
            actual = format_value(outcome.get("observed", 0.0), contains, key)
            label = f"{name} {expression}"
            lines.append(f"{label:<46}{actual:>18}{status:>12}")

    state = summary.get("state", {})
    lines.append("-" * _WIDTH)
    duration = state.get("testRunDurationMs", 0.0) / 1000.0
    lines.append(f"Duration: {duration:.1f}s")
    if state.get("isAborted"):
        lines.append(f"Aborted: {state.get('abortReason') or 'yes'}")
    lines.append(f"Overall: {'PASS' if state.get('thresholdsPassed', True) else 'FAIL'}")
    return "\n".join(lines) + "\n"


def write_outputs(
    outputs: Mapping[str, Any],
    *,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> None:
    """
    Write ``handle_summary`` results.

    Keys are ``"stdout"``, ``"stderr"`` or file paths (parent directories
    are created).  Non-string values are written as JSON.
    """
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    for destination, content in outputs.items():
        text = content if isinstance(content, str) else json.dumps(content, indent=2, default=str)
        if destination == "stdout":
            stdout.write(text)
        elif destination == "stderr":
            stderr.write(text)
        else:
            path = Path(destination)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")

"""
Metrics aggregation for a load run.

Every virtual user reports what it observes (request timings, check
outcomes, custom business metrics) as samples.  The
:class:`MetricsRegistry` routes each sample to a typed, append-only
series:

- **Counter** -- running sum of deltas.
- **Gauge** -- last value written, with its min and max.
- **Rate** -- fraction of non-zero observations (0 when empty).
- **Trend** -- a distribution answering avg / min / max / med / ``p(N)``.

Contention is kept per series: each series has its own lock held only
for the few arithmetic updates of one sample, and the registry lock is
taken only when a series is created.  Threshold checks and the end of
test summary read :meth:`MetricsRegistry.snapshot`, which copies each
series under its own lock, so producers are never stalled by a reader
for longer than one copy.

Trends retain samples exactly up to a configurable cap and then switch to
reservoir sampling (Algorithm R), so memory stays bounded on long soak
runs.  Count, sum, min and max stay exact regardless; percentiles become
estimates whose rank error shrinks with the reservoir size.

Key Concepts Demonstrated:
- Fine-grained locking instead of a global lock
- Copy-on-read snapshots for consistent point-in-time reads
- Sub-metrics selected by tags (``http_req_duration{type:read}``)
- Script-level metric handles bound to the calling virtual user
"""

from __future__ import annotations

import logging
import math
import random
import re
import threading
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class MetricType(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


class ValueType(str, Enum):
    """What the numbers of a metric mean; drives summary formatting."""

    DEFAULT = "default"
    TIME = "time"
    DATA = "data"


# name -> (type, contains)
BUILTIN_METRICS: dict[str, tuple[MetricType, ValueType]] = {
    "http_reqs": (MetricType.COUNTER, ValueType.DEFAULT),
    "http_req_duration": (MetricType.TREND, ValueType.TIME),
    "http_req_waiting": (MetricType.TREND, ValueType.TIME),
    "http_req_failed": (MetricType.RATE, ValueType.DEFAULT),
    "data_received": (MetricType.COUNTER, ValueType.DATA),
    "data_sent": (MetricType.COUNTER, ValueType.DATA),
    "checks": (MetricType.RATE, ValueType.DEFAULT),
    "iterations": (MetricType.COUNTER, ValueType.DEFAULT),
    "iteration_duration": (MetricType.TREND, ValueType.TIME),
    "iteration_errors": (MetricType.COUNTER, ValueType.DEFAULT),
    "dropped_iterations": (MetricType.COUNTER, ValueType.DEFAULT),
    "interrupted_iterations": (MetricType.COUNTER, ValueType.DEFAULT),
    "vus": (MetricType.GAUGE, ValueType.DEFAULT),
    "vus_max": (MetricType.GAUGE, ValueType.DEFAULT),
}

_METRIC_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")
_SUBMETRIC_KEY = re.compile(r"^(?P<name>[^{}\s]+)\{(?P<selector>[^{}]*)\}$")


@dataclass(frozen=True)
class Sample:
    """One observation emitted by a virtual user."""

    metric: str
    value: float
    tags: Mapping[str, str] = field(default_factory=dict)
    time: float = field(default_factory=time.time)


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """
    Percentile with linear interpolation between closest ranks.

    Args:
        sorted_values: Ascending values; must not be empty.
        pct: Percentile in ``[0, 100]``.
    """
    if not sorted_values:
        raise ValueError("percentile of an empty sequence")
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * (pct / 100.0)
    lower = math.floor(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    fraction = rank - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * fraction


def parse_metric_key(key: str) -> tuple[str, dict[str, str]]:
    """
    Split ``name{tag:value,...}`` into the parent name and its selector.

    A plain metric name yields an empty selector.

    Raises:
        ValueError: If the key is not a valid metric or sub-metric name.
    """
    key = key.strip()
    match = _SUBMETRIC_KEY.match(key)
    if match is None:
        if not _METRIC_NAME.match(key):
            raise ValueError(f"Invalid metric name: {key!r}")
        return key, {}

    name = match.group("name")
    if not _METRIC_NAME.match(name):
        raise ValueError(f"Invalid metric name: {name!r}")
    selector: dict[str, str] = {}
    for part in match.group("selector").split(","):
        tag, sep, value = part.partition(":")
        tag = tag.strip()
        if not sep or not tag:
            raise ValueError(f"Invalid tag selector in {key!r}: {part!r}")
        selector[tag] = value.strip().strip("\"'")
    if not selector:
        raise ValueError(f"Empty tag selector in {key!r}")
    return name, selector


# =====================================================================
# Snapshots
# =====================================================================


@dataclass(frozen=True)
class SeriesSnapshot:
    """
    Immutable point-in-time view of one series.

    ``values`` holds the series' headline numbers; for trends
    ``samples`` keeps the sorted retained samples so any ``p(N)`` can be
    answered after the fact.
    """

    name: str
    type: MetricType
    contains: ValueType
    values: Mapping[str, float]
    samples: tuple[float, ...] = ()

    @property
    def count(self) -> float:
        return self.values.get("count", 0.0)

    def aggregate(self, aggregation: str) -> float:
        """
        Resolve an aggregation name (``avg``, ``p(95)``, ...) for this series.

        Raises:
            KeyError: If the aggregation does not exist for this type.
        """
        if self.type is MetricType.TREND and aggregation.startswith("p("):
            pct = float(aggregation[2:-1])
            return self.percentile(pct)
        if aggregation not in self.values:
            raise KeyError(f"{aggregation!r} is not available for {self.type.value} metric {self.name}")
        return self.values[aggregation]

    def percentile(self, pct: float) -> float:
        if not self.samples:
            return 0.0
        if pct <= 0:
            return self.values["min"]
        if pct >= 100:
            return self.values["max"]
        return percentile(self.samples, pct)


# =====================================================================
# Series
# =====================================================================


class _Series:
    """Base series: owns its lock; subclasses keep the accumulators."""

    type: MetricType

    def __init__(self, name: str, contains: ValueType = ValueType.DEFAULT) -> None:
        self.name = name
        self.contains = contains
        self._lock = threading.Lock()

    def add(self, value: float) -> None:
        with self._lock:
            self._add(value)

    def snapshot(self) -> SeriesSnapshot:
        with self._lock:
            return self._snapshot()

    def _add(self, value: float) -> None:
        raise NotImplementedError

    def _snapshot(self) -> SeriesSnapshot:
        raise NotImplementedError


class CounterSeries(_Series):
    type = MetricType.COUNTER

    def __init__(self, name: str, contains: ValueType = ValueType.DEFAULT) -> None:
        super().__init__(name, contains)
        self._sum = 0.0

    def _add(self, value: float) -> None:
        if value < 0:
            raise ValueError(f"Counter {self.name} cannot decrease (got {value})")
        self._sum += value

    def _snapshot(self) -> SeriesSnapshot:
        return SeriesSnapshot(self.name, self.type, self.contains, {"count": self._sum})


class GaugeSeries(_Series):
    type = MetricType.GAUGE

    def __init__(self, name: str, contains: ValueType = ValueType.DEFAULT) -> None:
        super().__init__(name, contains)
        self._value = 0.0
        self._min = math.inf
        self._max = -math.inf
        self._count = 0

    def _add(self, value: float) -> None:
        self._value = value
        self._min = min(self._min, value)
        self._max = max(self._max, value)
        self._count += 1

    def _snapshot(self) -> SeriesSnapshot:
        if self._count == 0:
            values = {"value": 0.0, "min": 0.0, "max": 0.0}
        else:
            values = {"value": self._value, "min": self._min, "max": self._max}
        return SeriesSnapshot(self.name, self.type, self.contains, values)


class RateSeries(_Series):
    type = MetricType.RATE

    def __init__(self, name: str, contains: ValueType = ValueType.DEFAULT) -> None:
        super().__init__(name, contains)
        self._passes = 0
        self._total = 0

    def _add(self, value: float) -> None:
        self._total += 1
        if value:
            self._passes += 1

    def _snapshot(self) -> SeriesSnapshot:
        rate = self._passes / self._total if self._total else 0.0
        values = {
            "rate": rate,
            "passes": float(self._passes),
            "fails": float(self._total - self._passes),
            "count": float(self._total),
        }
        return SeriesSnapshot(self.name, self.type, self.contains, values)


class TrendSeries(_Series):
    """
    Distribution series with bounded memory.

    Up to ``max_samples`` values are kept exactly.  Beyond that each new
    value replaces a random retained one with probability
    ``max_samples / count`` (reservoir sampling), which keeps the
    retained set a uniform sample of everything observed.
    """

    type = MetricType.TREND

    def __init__(
        self,
        name: str,
        contains: ValueType = ValueType.DEFAULT,
        max_samples: int = 100_000,
    ) -> None:
        super().__init__(name, contains)
        if max_samples < 1:
            raise ValueError("max_samples must be >= 1")
        self._max_samples = max_samples
        self._samples: list[float] = []
        self._count = 0
        self._sum = 0.0
        self._min = math.inf
        self._max = -math.inf
        self._random = random.Random()

    def _add(self, value: float) -> None:
        self._count += 1
        self._sum += value
        self._min = min(self._min, value)
        self._max = max(self._max, value)
        if len(self._samples) < self._max_samples:
            self._samples.append(value)
            return
        slot = self._random.randrange(self._count)
        if slot < self._max_samples:
            self._samples[slot] = value

    def snapshot(self) -> SeriesSnapshot:
        # Copy under the lock, sort outside it.
        with self._lock:
            raw = list(self._samples)
            count, total, low, high = self._count, self._sum, self._min, self._max
        samples = sorted(raw)
        if count == 0:
            values = {"count": 0.0, "avg": 0.0, "min": 0.0, "max": 0.0, "med": 0.0}
        else:
            values = {
                "count": float(count),
                "avg": total / count,
                "min": low,
                "max": high,
                "med": percentile(samples, 50.0),
            }
        return SeriesSnapshot(self.name, self.type, self.contains, values, tuple(samples))


_SERIES_CLASSES: dict[MetricType, type[_Series]] = {
    MetricType.COUNTER: CounterSeries,
    MetricType.GAUGE: GaugeSeries,
    MetricType.RATE: RateSeries,
    MetricType.TREND: TrendSeries,
}


class SampleOutput(Protocol):
    def write(self, sample: Sample) -> None: ...


# =====================================================================
# Registry
# =====================================================================


class MetricsRegistry:
    """
    The run-wide set of metric series.

    Series are created on declaration (built-ins at construction time,
    custom metrics when a script declares them) and never removed during
    a run.  :meth:`add` is safe to call from any number of threads.

    Args:
        trend_max_samples: Exact-retention cap for every trend series.
        outputs: Sinks that receive every ingested sample.
    """

    def __init__(
        self,
        trend_max_samples: int = 100_000,
        outputs: Iterable[SampleOutput] = (),
    ) -> None:
        self._trend_max_samples = trend_max_samples
        self._series: dict[str, _Series] = {}
        # parent name -> [(selector, series)], replaced wholesale on change
        self._submetrics: dict[str, tuple[tuple[dict[str, str], _Series], ...]] = {}
        self._lock = threading.Lock()
        self._outputs = list(outputs)
        for name, (metric_type, contains) in BUILTIN_METRICS.items():
            self.declare(name, metric_type, contains)

    def declare(
        self,
        name: str,
        metric_type: MetricType,
        contains: ValueType = ValueType.DEFAULT,
    ) -> _Series:
        """
        Create (or return the existing) series *name* of *metric_type*.

        Raises:
            ValueError: If the name is invalid or already declared with a
                different type.
        """
        if not _METRIC_NAME.match(name):
            raise ValueError(f"Invalid metric name: {name!r}")
        existing = self._series.get(name)
        if existing is None:
            with self._lock:
                existing = self._series.get(name)
                if existing is None:
                    existing = self._new_series(name, metric_type, contains)
                    self._series[name] = existing
                    logger.debug("Declared %s metric %s", metric_type.value, name)
        if existing.type is not metric_type:
            raise ValueError(
                f"Metric {name!r} already declared as {existing.type.value}, "
                f"not {metric_type.value}"
            )
        return existing

    def declare_submetric(self, key: str) -> _Series:
        """
        Create the sub-metric series for ``parent{tag:value,...}``.

        The parent must already be declared; the sub-metric inherits its
        type and receives each later sample of the parent whose tags match
        every selector pair.

        Raises:
            KeyError: If the parent metric is unknown.
            ValueError: If *key* is malformed.
        """
        parent_name, selector = parse_metric_key(key)
        if not selector:
            return self.get(parent_name)
        parent = self.get(parent_name)
        with self._lock:
            existing = self._series.get(key)
            if existing is not None:
                return existing
            series = self._new_series(key, parent.type, parent.contains)
            self._series[key] = series
            self._submetrics[parent_name] = (
                *self._submetrics.get(parent_name, ()),
                (selector, series),
            )
        return series

    def _new_series(self, name: str, metric_type: MetricType, contains: ValueType) -> _Series:
        if metric_type is MetricType.TREND:
            return TrendSeries(name, contains, self._trend_max_samples)
        return _SERIES_CLASSES[metric_type](name, contains)

    def get(self, name: str) -> _Series:
        try:
            return self._series[name]
        except KeyError:
            raise KeyError(f"Unknown metric: {name!r}") from None

    def type_of(self, name: str) -> MetricType | None:
        series = self._series.get(name)
        return series.type if series is not None else None

    def __contains__(self, name: object) -> bool:
        return name in self._series

    def add(self, name: str, value: float, tags: Mapping[str, str] | None = None) -> None:
        """
        Ingest one sample.

        Only the target series' lock (and those of matching sub-metrics)
        is taken; the registry lock is not.

        Raises:
            KeyError: If *name* has not been declared.
        """
        tags = tags or {}
        self.get(name).add(value)
        for selector, series in self._submetrics.get(name, ()):
            if all(tags.get(tag) == expected for tag, expected in selector.items()):
                series.add(value)
        if self._outputs:
            sample = Sample(name, value, dict(tags))
            for output in self._outputs:
                output.write(sample)

    def snapshot(self) -> dict[str, SeriesSnapshot]:
        """Return a consistent per-series copy of every metric."""
        series = list(self._series.values())
        return {item.name: item.snapshot() for item in series}


# =====================================================================
# Script-level metric handles
# =====================================================================

_current = threading.local()


class SampleEmitter(Protocol):
    def emit(self, name: str, value: float, tags: Mapping[str, str] | None = None) -> None: ...


def bind_emitter(emitter: SampleEmitter | None) -> None:
    """Route handle samples emitted on this thread to *emitter*."""
    _current.emitter = emitter


def current_emitter() -> SampleEmitter:
    emitter = getattr(_current, "emitter", None)
    if emitter is None:
        raise RuntimeError("Metrics can only be recorded while a test run is executing")
    return emitter


class MetricHandle:
    """
    A custom metric declared by a load script at module level::

        purchase_success = Counter("purchase_success")
        checkout_duration = Trend("checkout_duration", is_time=True)

    The script loader declares every handle it finds in the script
    module, so thresholds on custom metrics are validated before the run
    starts.  ``add`` attaches the sample to whichever virtual user is
    running on the calling thread.
    """

    type: MetricType

    def __init__(self, name: str, is_time: bool = False) -> None:
        if not _METRIC_NAME.match(name):
            raise ValueError(f"Invalid metric name: {name!r}")
        self.name = name
        self.contains = ValueType.TIME if is_time else ValueType.DEFAULT

    def add(self, value: Any, tags: Mapping[str, str] | None = None) -> None:
        current_emitter().emit(self.name, float(value), tags)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class Counter(MetricHandle):
    type = MetricType.COUNTER


class Gauge(MetricHandle):
    type = MetricType.GAUGE


class Rate(MetricHandle):
    type = MetricType.RATE


class Trend(MetricHandle):
    type = MetricType.TREND

"""
Unit tests for the metrics registry and series.
"""

import threading

import pytest

from vuload.metrics import (
    Counter,
    MetricsRegistry,
    MetricType,
    Sample,
    TrendSeries,
    ValueType,
    bind_emitter,
    parse_metric_key,
    percentile,
)


pytestmark = pytest.mark.unit


class _ListOutput:
    def __init__(self):
        self.samples = []

    def write(self, sample: Sample) -> None:
        self.samples.append(sample)


class TestPercentile:
    """Linear interpolation between closest ranks."""

    def test_interpolates(self):
        assert percentile([1, 2, 3, 4], 50) == pytest.approx(2.5)
        assert percentile([10, 20], 90) == pytest.approx(19)

    def test_single_value(self):
        assert percentile([7], 99) == 7

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            percentile([], 50)

    def test_p95_with_few_slow_samples(self):
        values = sorted([50.0] * 95 + [500.0] * 5)

        assert percentile(values, 95) == pytest.approx(72.5)


class TestMetricKeys:
    """Parsing ``name{tag:value}`` keys."""

    def test_plain_name(self):
        assert parse_metric_key("http_reqs") == ("http_reqs", {})

    def test_submetric_selector(self):
        name, selector = parse_metric_key("http_req_duration{type:read, status:'200'}")

        assert name == "http_req_duration"
        assert selector == {"type": "read", "status": "200"}

    @pytest.mark.parametrize("key", ["", "1abc", "http_reqs{}", "http_reqs{type}", "a b"])
    def test_invalid_keys_raise(self, key):
        with pytest.raises(ValueError):
            parse_metric_key(key)


class TestSeries:
    """Aggregation per metric type."""

    def test_counter_sums_concurrent_adds(self, registry):
        # Arrange
        def worker():
            for _ in range(1000):
                registry.add("http_reqs", 1)

        threads = [threading.Thread(target=worker) for _ in range(8)]

        # Act
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # Assert
        assert registry.snapshot()["http_reqs"].count == 8000

    def test_counter_rejects_negative_delta(self, registry):
        with pytest.raises(ValueError):
            registry.add("iterations", -1)

    def test_gauge_keeps_last_min_max(self, registry):
        for value in (3, 9, 1, 4):
            registry.add("vus", value)

        values = registry.snapshot()["vus"].values

        assert values == {"value": 4, "min": 1, "max": 9}

    def test_empty_gauge_reports_zero(self, registry):
        assert registry.snapshot()["vus"].values == {"value": 0.0, "min": 0.0, "max": 0.0}

    def test_rate_counts_non_zero_values(self, registry):
        for value in (1, 0, 1, 1):
            registry.add("checks", value)

        snapshot = registry.snapshot()["checks"]

        assert snapshot.aggregate("rate") == pytest.approx(0.75)
        assert snapshot.values["passes"] == 3
        assert snapshot.values["fails"] == 1

    def test_empty_rate_is_zero(self, registry):
        assert registry.snapshot()["http_req_failed"].aggregate("rate") == 0.0

    def test_trend_aggregations(self, registry):
        for value in (100, 200, 300, 400):
            registry.add("http_req_duration", value)

        snapshot = registry.snapshot()["http_req_duration"]

        assert snapshot.aggregate("avg") == 250
        assert snapshot.aggregate("min") == 100
        assert snapshot.aggregate("max") == 400
        assert snapshot.aggregate("med") == 250
        assert snapshot.aggregate("p(90)") == pytest.approx(370)
        assert snapshot.contains is ValueType.TIME

    def test_empty_trend_is_zero(self, registry):
        snapshot = registry.snapshot()["iteration_duration"]

        assert snapshot.aggregate("avg") == 0.0
        assert snapshot.aggregate("p(95)") == 0.0

    def test_unknown_aggregation_raises(self, registry):
        with pytest.raises(KeyError):
            registry.snapshot()["checks"].aggregate("avg")

    def test_reservoir_keeps_exact_extremes(self):
        # Arrange
        series = TrendSeries("latency", max_samples=50)

        # Act
        for value in range(1, 1001):
            series.add(float(value))
        snapshot = series.snapshot()

        # Assert
        assert len(snapshot.samples) == 50
        assert snapshot.count == 1000
        assert snapshot.aggregate("avg") == pytest.approx(500.5)
        assert snapshot.percentile(0) == 1
        assert snapshot.percentile(100) == 1000
        assert 1 <= snapshot.aggregate("p(50)") <= 1000

    def test_max_samples_must_be_positive(self):
        with pytest.raises(ValueError):
            TrendSeries("latency", max_samples=0)


class TestRegistry:
    """Declaration, sub-metrics and snapshots."""

    def test_builtins_are_declared(self, registry):
        assert registry.type_of("http_req_duration") is MetricType.TREND
        assert registry.type_of("http_req_failed") is MetricType.RATE
        assert registry.type_of("nope") is None

    def test_redeclare_same_type_returns_series(self, registry):
        first = registry.declare("orders", MetricType.COUNTER)

        assert registry.declare("orders", MetricType.COUNTER) is first

    def test_redeclare_other_type_raises(self, registry):
        registry.declare("orders", MetricType.COUNTER)

        with pytest.raises(ValueError):
            registry.declare("orders", MetricType.TREND)

    def test_unknown_metric_raises(self, registry):
        with pytest.raises(KeyError):
            registry.add("not_declared", 1)

    def test_submetric_receives_matching_samples_only(self, registry):
        # Arrange
        registry.declare_submetric("http_req_duration{type:read}")

        # Act
        registry.add("http_req_duration", 100, {"type": "read"})
        registry.add("http_req_duration", 900, {"type": "write"})
        registry.add("http_req_duration", 300, {"type": "read", "status": "200"})
        snapshot = registry.snapshot()

        # Assert
        assert snapshot["http_req_duration"].count == 3
        sub = snapshot["http_req_duration{type:read}"]
        assert sub.count == 2
        assert sub.aggregate("max") == 300
        assert sub.type is MetricType.TREND

    def test_submetric_of_unknown_parent_raises(self, registry):
        with pytest.raises(KeyError):
            registry.declare_submetric("missing{type:read}")

    def test_snapshot_is_isolated_from_later_samples(self, registry):
        registry.add("iterations", 1)
        snapshot = registry.snapshot()

        registry.add("iterations", 5)

        assert snapshot["iterations"].count == 1
        assert registry.snapshot()["iterations"].count == 6

    def test_outputs_receive_every_sample(self):
        output = _ListOutput()
        registry = MetricsRegistry(outputs=[output])

        registry.add("http_reqs", 1, {"method": "GET"})

        assert len(output.samples) == 1
        assert output.samples[0].metric == "http_reqs"
        assert output.samples[0].tags == {"method": "GET"}


class TestMetricHandles:
    """Module-level handles used by load scripts."""

    def test_add_without_running_user_raises(self):
        bind_emitter(None)

        with pytest.raises(RuntimeError):
            Counter("orders").add(1)

    def test_add_routes_to_bound_emitter(self):
        emitted = []

        class _Emitter:
            def emit(self, name, value, tags=None):
                emitted.append((name, value, tags))

        bind_emitter(_Emitter())
        try:
            Counter("orders").add(2, {"kind": "web"})
        finally:
            bind_emitter(None)

        assert emitted == [("orders", 2.0, {"kind": "web"})]

    def test_invalid_name_raises(self):
        with pytest.raises(ValueError):
            Counter("not valid")

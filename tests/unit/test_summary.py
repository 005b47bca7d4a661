"""
Unit tests for the end-of-test summary.
"""

import io
import json

import pytest

from vuload.summary import build_summary, format_value, render_text, summary_values, write_outputs
from vuload.thresholds import ThresholdEvaluator, parse_thresholds
from vuload.vu import CheckTally


pytestmark = pytest.mark.unit


@pytest.fixture
def populated(registry):
    """Registry with a little traffic and matching threshold results."""
    for value in (100, 200, 300):
        registry.add("http_req_duration", value)
        registry.add("http_reqs", 1)
        registry.add("http_req_failed", 0)
    registry.add("data_received", 2048)
    evaluator = ThresholdEvaluator(parse_thresholds({
        "http_req_duration": ["p(95)<250", "p(99.9)<1000"],
        "iterations": ["count>0"],
    }))
    snapshot = registry.snapshot()
    return snapshot, evaluator.evaluate(snapshot, 10.0)


class TestBuildSummary:
    """Shape of the summary document."""

    def test_metrics_sections(self, populated):
        # Arrange
        snapshot, results = populated

        # Act
        summary = build_summary(snapshot, results, duration_s=10.0)

        # Assert
        metrics = summary["metrics"]
        duration = metrics["http_req_duration"]
        assert duration["type"] == "trend"
        assert duration["contains"] == "time"
        assert duration["values"]["avg"] == 200
        assert "p(99.9)" in duration["values"]
        assert metrics["http_reqs"]["values"] == {"count": 3, "rate": pytest.approx(0.3)}
        assert metrics["http_req_failed"]["values"] == {"rate": 0.0, "passes": 0.0, "fails": 3.0}
        assert metrics["data_received"]["contains"] == "data"

    def test_unused_metrics_are_omitted_unless_thresholded(self, populated):
        snapshot, results = populated

        metrics = build_summary(snapshot, results, duration_s=10.0)["metrics"]

        assert "dropped_iterations" not in metrics
        assert "vus" not in metrics
        assert metrics["iterations"]["thresholds"]["count>0"] == {"ok": False, "observed": 0.0}

    def test_threshold_outcomes_and_state(self, populated):
        snapshot, results = populated

        summary = build_summary(
            snapshot, results, duration_s=2.5, aborted=True, abort_reason="threshold"
        )

        outcome = summary["metrics"]["http_req_duration"]["thresholds"]["p(95)<250"]
        assert outcome["ok"] is False
        assert outcome["observed"] == pytest.approx(290)
        assert summary["state"] == {
            "testRunDurationMs": 2500.0,
            "isAborted": True,
            "abortReason": "threshold",
            "thresholdsPassed": False,
        }

    def test_checks_are_listed_by_label(self, registry):
        tally = CheckTally()
        tally.add("status is 200", True)
        tally.add("status is 200", False)
        tally.add("has body", True)

        summary = build_summary(registry.snapshot(), [], duration_s=1.0, checks=tally.snapshot())

        assert summary["root_group"]["checks"] == [
            {"name": "has body", "passes": 1, "fails": 0},
            {"name": "status is 200", "passes": 1, "fails": 1},
        ]
        assert summary["state"]["thresholdsPassed"] is True

    def test_document_is_json_serialisable(self, populated):
        snapshot, results = populated

        summary = build_summary(
            snapshot, results, duration_s=1.0, options={"vus": 2, "fn": object()}
        )

        assert json.loads(json.dumps(summary))["options"]["vus"] == 2

    def test_summary_values_extracts_aggregates(self, populated):
        snapshot, results = populated

        values = summary_values(build_summary(snapshot, results, duration_s=10.0))

        assert values["http_reqs"]["count"] == 3
        assert values["http_req_duration"]["max"] == 300


class TestFormatting:
    """Unit-aware rendering."""

    @pytest.mark.parametrize("value, contains, key, expected", [
        (12.3456, "time", "avg", "12.35ms"),
        (1500, "time", "max", "1.50s"),
        (0.0123, "default", "rate", "1.23%"),
        (512, "data", "", "512 B"),
        (2048, "data", "", "2.0 kB"),
        (3_500_000, "data", "", "3.5 MB"),
        (42, "default", "", "42"),
        (4.5, "default", "", "4.50"),
    ])
    def test_format_value(self, value, contains, key, expected):
        assert format_value(value, contains, key) == expected

    def test_render_text_lists_thresholds_and_verdict(self, populated, registry):
        snapshot, results = populated
        tally = CheckTally()
        tally.add("status is 200", False)
        summary = build_summary(snapshot, results, duration_s=3.0, checks=tally.snapshot())

        text = render_text(summary)

        assert text.startswith("Load Test Summary")
        assert "status is 200" in text
        assert "http_req_duration p(95)<250" in text
        assert "FAIL" in text
        assert "Duration: 3.0s" in text
        assert text.rstrip().endswith("Overall: FAIL")

    def test_render_text_marks_aborted_runs(self, registry):
        summary = build_summary(
            registry.snapshot(), [], duration_s=1.0, aborted=True, abort_reason="stock exhausted"
        )

        text = render_text(summary)

        assert "Aborted: stock exhausted" in text
        assert "Overall: PASS" in text


class TestWriteOutputs:
    """``handle_summary`` destinations."""

    def test_streams_and_files(self, tmp_path):
        stdout, stderr = io.StringIO(), io.StringIO()
        target = tmp_path / "reports" / "summary.json"

        write_outputs(
            {"stdout": "table\n", "stderr": "warn\n", str(target): {"ok": True}},
            stdout=stdout,
            stderr=stderr,
        )

        assert stdout.getvalue() == "table\n"
        assert stderr.getvalue() == "warn\n"
        assert json.loads(target.read_text(encoding="utf-8")) == {"ok": True}

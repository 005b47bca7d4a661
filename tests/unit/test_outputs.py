"""
Unit tests for the JSON lines sample output.
"""

import json

import pytest

from vuload.exceptions import OptionsError
from vuload.metrics import MetricsRegistry, Sample
from vuload.outputs import JsonLinesOutput, parse_output_flag, to_point


pytestmark = pytest.mark.unit


def test_to_point_shape():
    point = to_point(Sample("http_reqs", 1.0, {"method": "GET"}, time=0.0))

    assert point == {
        "type": "Point",
        "metric": "http_reqs",
        "data": {"time": "1970-01-01T00:00:00+00:00", "value": 1.0, "tags": {"method": "GET"}},
    }


def test_registry_samples_are_written_as_lines(tmp_path):
    # Arrange
    path = tmp_path / "out" / "samples.json"
    output = JsonLinesOutput(path)

    # Act
    with output:
        registry = MetricsRegistry(outputs=[output])
        registry.add("http_reqs", 1, {"status": "200"})
        registry.add("http_req_duration", 12.5, {"status": "200"})

    # Assert
    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["metric"] for line in lines] == ["http_reqs", "http_req_duration"]
    assert lines[1]["data"]["value"] == 12.5
    assert lines[1]["data"]["tags"] == {"status": "200"}
    assert output.written == 2


def test_close_without_start_is_harmless(tmp_path):
    JsonLinesOutput(tmp_path / "never.json").close()

    assert not (tmp_path / "never.json").exists()


def test_parse_output_flag(tmp_path):
    output = parse_output_flag(f"json={tmp_path / 'x.json'}")

    assert output.path == tmp_path / "x.json"


@pytest.mark.parametrize("flag", ["csv=out.csv", "json", "json=", "influxdb=http://db"])
def test_parse_output_flag_rejects_unknown(flag):
    with pytest.raises(OptionsError):
        parse_output_flag(flag)

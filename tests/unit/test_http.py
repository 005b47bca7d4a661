"""
Unit tests for the per-user HTTP client.

``requests.Session.request`` is replaced with a fake so no network is
needed; the live-server integration tests cover the real transport.
"""

from datetime import timedelta

import pytest
import requests

from vuload.exceptions import IterationInterrupted
from vuload.http import ERROR_CONNECTION, ERROR_TIMEOUT, HttpClient, Response


pytestmark = pytest.mark.unit


class RecordingEmitter:
    """Collects emitted samples as (name, value, tags) tuples."""

    def __init__(self):
        self.samples = []

    def emit(self, name, value, tags=None):
        self.samples.append((name, value, dict(tags or {})))

    def values(self, name):
        return [value for metric, value, _ in self.samples if metric == name]

    def tags(self, name):
        return [tags for metric, _, tags in self.samples if metric == name]


def _fake_response(status=200, body=b'{"ok": true}', sent=b"", url="http://api.test/x"):
    response = requests.Response()
    response.status_code = status
    response._content = body
    response.url = url
    response.elapsed = timedelta(milliseconds=12)
    response.request = requests.PreparedRequest()
    response.request.body = sent
    return response


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def client(emitter):
    http = HttpClient(emitter, base_url="http://api.test", timeout=3)
    yield http
    http.close()


@pytest.fixture
def fake_transport(monkeypatch):
    """Replace the session transport; returns the list of calls made."""
    calls = []
    outcome = {"response": _fake_response()}

    def _request(self, **kwargs):
        calls.append(kwargs)
        result = outcome["response"]
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(requests.Session, "request", _request)
    return calls, outcome


class TestRequest:
    """Metrics and tags recorded for each call."""

    def test_successful_call_records_all_metrics(self, client, emitter, fake_transport):
        # Arrange
        calls, outcome = fake_transport
        outcome["response"] = _fake_response(body=b"12345", sent=b"abc")

        # Act
        response = client.get("/x", tags={"type": "read"})

        # Assert
        assert response.status == 200
        assert response.ok
        assert calls[0]["url"] == "http://api.test/x"
        assert calls[0]["timeout"] == 3
        assert emitter.values("http_reqs") == [1]
        assert emitter.values("http_req_failed") == [0.0]
        assert emitter.values("data_sent") == [3.0]
        assert emitter.values("data_received") == [5.0]
        assert emitter.values("http_req_waiting") == [pytest.approx(12.0)]
        assert emitter.values("http_req_duration")[0] >= 0
        (tags,) = emitter.tags("http_reqs")
        assert tags["method"] == "GET"
        assert tags["status"] == "200"
        assert tags["expected_response"] == "true"
        assert tags["type"] == "read"
        assert tags["name"] == "http://api.test/x"

    def test_name_tag_groups_dynamic_urls(self, client, emitter, fake_transport):
        client.get("/api/products/42", name="/api/products/[id]")

        (tags,) = emitter.tags("http_reqs")
        assert tags["name"] == "/api/products/[id]"

    def test_server_error_counts_as_failed(self, client, emitter, fake_transport):
        _, outcome = fake_transport
        outcome["response"] = _fake_response(status=500)

        response = client.post("/x", json={"a": 1})

        assert response.status == 500
        assert not response.ok
        assert emitter.values("http_req_failed") == [1.0]
        assert emitter.tags("http_reqs")[0]["expected_response"] == "false"

    @pytest.mark.parametrize("error, code", [
        (requests.ConnectionError("refused"), ERROR_CONNECTION),
        (requests.Timeout("slow"), ERROR_TIMEOUT),
    ])
    def test_transport_errors_return_status_zero(self, client, emitter, fake_transport, error, code):
        _, outcome = fake_transport
        outcome["response"] = error

        response = client.get("/x")

        assert response.status == 0
        assert response.error_code == code
        assert response.error
        assert emitter.values("http_req_failed") == [1.0]
        assert emitter.tags("http_reqs")[0]["error_code"] == str(code)

    def test_interrupted_client_refuses_calls(self, emitter, fake_transport):
        calls, _ = fake_transport
        http = HttpClient(emitter, interrupted=lambda: True)

        with pytest.raises(IterationInterrupted):
            http.get("http://api.test/x")

        assert calls == []
        assert emitter.samples == []

    def test_failure_during_stop_raises_interrupted(self, emitter, fake_transport):
        # Arrange: the stop arrives while the call is in flight.
        _, outcome = fake_transport
        outcome["response"] = requests.ConnectionError("closed")
        state = {"stopping": False}

        def _interrupted():
            was = state["stopping"]
            state["stopping"] = True
            return was

        http = HttpClient(emitter, interrupted=_interrupted)

        # Act / Assert
        with pytest.raises(IterationInterrupted):
            http.get("http://api.test/x")
        assert emitter.samples == []


class TestUrls:
    """Resolution of relative URLs."""

    @pytest.mark.parametrize("base, url, expected", [
        ("http://api.test", "/health", "http://api.test/health"),
        ("http://api.test/", "health", "http://api.test/health"),
        ("http://api.test/v1", "/health", "http://api.test/v1/health"),
        ("http://api.test", "https://other.test/x", "https://other.test/x"),
        ("", "/health", "/health"),
    ])
    def test_url_for(self, emitter, base, url, expected):
        http = HttpClient(emitter, base_url=base)

        assert http.url_for(url) == expected


class TestResponseJson:
    """Dotted-path access into JSON bodies."""

    @pytest.fixture
    def response(self):
        return Response("GET", "http://api.test", 200, body=b'{"data": [{"id": 7}], "token": "t"}')

    def test_whole_body(self, response):
        assert response.json() == {"data": [{"id": 7}], "token": "t"}

    @pytest.mark.parametrize("path, expected", [
        ("token", "t"),
        ("data.0.id", 7),
        ("data.5.id", None),
        ("missing.key", None),
        ("token.deeper", None),
    ])
    def test_paths(self, response, path, expected):
        assert response.json(path) == expected

    def test_invalid_json_is_none(self):
        response = Response("GET", "http://api.test", 502, body=b"<html>Bad Gateway</html>")

        assert response.json() is None
        assert response.json("data") is None
        assert "Bad Gateway" in response.text

    def test_status_code_alias(self, response):
        assert response.status_code == 200

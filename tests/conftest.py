"""
Shared pytest fixtures for the vuload test suite.

Unit tests build engine objects directly; integration tests drive real
virtual users against a small Flask application served from a
background thread, whose endpoints answer with a deterministic latency.

Key Concepts Demonstrated:
- Live server fixture in a daemon thread
- Factory fixture writing throwaway load scripts
- Fast engine configuration for tests
"""

import os
import textwrap
import threading
import time
from pathlib import Path

import pytest
from flask import Flask, jsonify, request
from werkzeug.serving import make_server

# Select the fast engine profile before anything reads the config.
os.environ["VULOAD_ENV"] = "testing"

from vuload.config import TestingConfig
from vuload.metrics import MetricsRegistry
from vuload.script import LoadScript, load_script
from vuload.vu import RunState, VirtualUser


# -----------------------------------------------------------------------------
# Target Server Fixtures
# -----------------------------------------------------------------------------

def create_target_app() -> Flask:
    """Build the Flask app used as the load target."""
    app = Flask("vuload-target")

    @app.get("/health")
    def health():
        return jsonify(status="ok")

    @app.get("/fixed")
    def fixed():
        time.sleep(float(request.args.get("ms", 50)) / 1000.0)
        return jsonify(ok=True)

    @app.get("/status/<int:code>")
    def status(code: int):
        return jsonify(status=code), code

    @app.get("/json")
    def json_body():
        return jsonify(data=[{"id": 1}, {"id": 2}], token="abc")

    @app.post("/echo")
    def echo():
        return jsonify(received=request.get_json(silent=True)), 201

    return app


@pytest.fixture(scope="session")
def live_server():
    """
    Start the target app on a free port for the whole session.

    Yields:
        str: Base URL of the running server.
    """
    server = make_server("127.0.0.1", 0, create_target_app(), threaded=True)
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()

    yield f"http://127.0.0.1:{server.server_port}"

    server.shutdown()


# -----------------------------------------------------------------------------
# Engine Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def registry():
    """Fresh metrics registry with the built-in metrics declared."""
    return MetricsRegistry(trend_max_samples=TestingConfig.TREND_MAX_SAMPLES)


@pytest.fixture
def run_state(registry):
    """Run state pointing at an unroutable base URL (no network in unit tests)."""
    return RunState(registry=registry, config=TestingConfig, base_url="http://vuload.invalid")


@pytest.fixture
def make_vu(run_state):
    """
    Factory fixture for virtual users bound to ``run_state``.

    Example:
        def test_something(make_vu):
            vu = make_vu(scenario="browse")
    """
    created = []

    def _make_vu(scenario: str = "default", tags: dict | None = None) -> VirtualUser:
        vu = VirtualUser(len(created) + 1, run_state, scenario, tags)
        created.append(vu)
        return vu

    yield _make_vu

    for vu in created:
        vu.http.close()


@pytest.fixture
def write_script(tmp_path):
    """
    Factory fixture writing a load script and loading it.

    Returns:
        Function taking the script source (dedented) and an optional
        file name, returning the loaded :class:`LoadScript`.
    """

    def _write_script(source: str, name: str = "script.py") -> LoadScript:
        path: Path = tmp_path / name
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return load_script(path)

    return _write_script

"""
The bundled e-commerce scripts must load and validate without a server.
"""

from pathlib import Path

import pytest

from vuload.config import TestingConfig
from vuload.runner import Runner
from vuload.script import load_script

pytestmark = pytest.mark.unit

SCENARIOS_DIR = Path(__file__).resolve().parents[2] / "scenarios"


@pytest.mark.parametrize("name", [
    "baseline.py",
    "purchase_flow.py",
    "auth_stress.py",
    "mixed_workload.py",
    "spike.py",
    "soak.py",
    "stress.py",
    "api_crud.py",
])
def test_bundled_script_prepares(name):
    script = load_script(SCENARIOS_DIR / name)

    scenarios, registry, evaluator = Runner(script, config=TestingConfig).prepare()

    assert scenarios
    assert evaluator
    assert all(key in registry for key in evaluator.metric_keys)

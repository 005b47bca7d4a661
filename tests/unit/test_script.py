"""
Unit tests for loading load scripts and option files.
"""

import pytest

from vuload.exceptions import OptionsError, ScriptError
from vuload.metrics import Counter, Trend
from vuload.script import load_script, load_thresholds_file, load_yaml, merge_options


pytestmark = pytest.mark.unit


class TestLoadScript:
    """Importing scripts from a path."""

    def test_collects_options_functions_and_metrics(self, write_script):
        # Arrange / Act
        script = write_script("""
            from vuload import Counter, Trend

            options = {"vus": 2, "duration": "1s", "thresholds": {"orders": ["count>0"]}}

            orders = Counter("orders")
            latency = Trend("checkout_latency", is_time=True)

            def setup(ctx):
                return {"token": "t"}

            def default(ctx, data):
                pass

            def handle_summary(data):
                return {}
        """)

        # Assert
        assert script.options["vus"] == 2
        assert script.setup is not None
        assert script.teardown is None
        assert script.handle_summary is not None
        assert callable(script.function("default"))
        assert sorted(handle.name for handle in script.metrics) == ["checkout_latency", "orders"]
        assert {type(handle) for handle in script.metrics} == {Counter, Trend}

    def test_options_are_copied(self, write_script):
        script = write_script("""
            options = {"thresholds": {"checks": ["rate>0.9"]}}

            def default(ctx, data):
                pass
        """)

        script.options["thresholds"]["checks"].append("rate>0.99")

        assert script.module.options["thresholds"]["checks"] == ["rate>0.9"]

    def test_script_without_options_is_allowed(self, write_script):
        script = write_script("def default(ctx, data):\n    pass\n")

        assert script.options == {}

    def test_missing_function_raises(self, write_script):
        script = write_script("options = {}\n")

        with pytest.raises(ScriptError, match="no function 'browse'"):
            script.function("browse")

    def test_import_error_is_wrapped(self, write_script):
        with pytest.raises(ScriptError, match="Failed to import"):
            write_script("raise RuntimeError('broken at import')\n")

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ScriptError, match="not found"):
            load_script(tmp_path / "nope.py")

    def test_non_dict_options_raise(self, write_script):
        with pytest.raises(ScriptError):
            write_script("options = ['vus', 10]\n")

    def test_non_callable_lifecycle_raises(self, write_script):
        with pytest.raises(ScriptError):
            write_script("setup = 42\n")

    def test_sibling_modules_are_importable(self, tmp_path, write_script):
        (tmp_path / "sibling_steps_for_script.py").write_text("VALUE = 7\n", encoding="utf-8")

        script = write_script("""
            from sibling_steps_for_script import VALUE

            options = {"iterations": VALUE}
        """)

        assert script.options["iterations"] == 7


class TestOptionFiles:
    """YAML overrides."""

    def test_load_yaml_mapping(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("vus: 5\nduration: 10s\n", encoding="utf-8")

        assert load_yaml(path) == {"vus": 5, "duration": "10s"}

    def test_empty_yaml_is_empty_mapping(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("", encoding="utf-8")

        assert load_yaml(path) == {}

    @pytest.mark.parametrize("content", ["- a\n- b\n", "key: [unclosed\n"])
    def test_invalid_yaml_raises(self, tmp_path, content):
        path = tmp_path / "bad.yml"
        path.write_text(content, encoding="utf-8")

        with pytest.raises(OptionsError):
            load_yaml(path)

    def test_missing_yaml_raises(self, tmp_path):
        with pytest.raises(OptionsError):
            load_yaml(tmp_path / "missing.yml")

    def test_thresholds_file_accepts_both_layouts(self, tmp_path):
        nested = tmp_path / "nested.yml"
        nested.write_text("thresholds:\n  checks: ['rate>0.9']\n", encoding="utf-8")
        flat = tmp_path / "flat.yml"
        flat.write_text("checks: ['rate>0.9']\n", encoding="utf-8")

        assert load_thresholds_file(nested) == load_thresholds_file(flat) == {"checks": ["rate>0.9"]}

    def test_merge_replaces_keys_and_merges_thresholds(self):
        base = {
            "vus": 1,
            "thresholds": {"checks": ["rate>0.9"], "http_req_duration": ["p(95)<500"]},
        }

        merged = merge_options(base, {"vus": 4, "thresholds": {"http_req_duration": ["p(95)<300"]}})

        assert merged["vus"] == 4
        assert merged["thresholds"] == {
            "checks": ["rate>0.9"],
            "http_req_duration": ["p(95)<300"],
        }
        assert base["thresholds"]["http_req_duration"] == ["p(95)<500"]

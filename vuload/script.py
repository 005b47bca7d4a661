"""
Loading load scripts.

A load script is an ordinary Python module::

    from vuload import Counter

    options = {
        "vus": 10,
        "duration": "30s",
        "thresholds": {"http_req_duration": ["p(95)<500"]},
    }

    orders = Counter("orders_created")

    def setup(ctx):
        return {"token": ...}

    def default(ctx, data):
        ...

It is imported from its file path with :mod:`importlib`.  The script's
directory is put on ``sys.path`` first, so scripts can share helpers with
plain ``import helpers``.

Options can be overridden from YAML files without touching the script:
``--config`` replaces top-level keys, and both ``--config`` and
``--thresholds`` merge thresholds per metric.
"""

from __future__ import annotations

import copy
import importlib.util
import logging
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any

import yaml

from vuload.exceptions import OptionsError, ScriptError
from vuload.metrics import MetricHandle

logger = logging.getLogger(__name__)


@dataclass
class LoadScript:
    """
    A loaded script and the pieces the runner needs from it.

    Attributes:
        path: Where the script was loaded from.
        module: The imported module.
        options: The script's options with any overrides applied.
        setup / teardown / handle_summary: Optional lifecycle functions.
        metrics: Module-level metric handles (custom metrics).
    """

    path: Path
    module: ModuleType
    options: dict[str, Any] = field(default_factory=dict)
    setup: Callable[..., Any] | None = None
    teardown: Callable[..., Any] | None = None
    handle_summary: Callable[[dict[str, Any]], Any] | None = None
    metrics: list[MetricHandle] = field(default_factory=list)

    def function(self, name: str) -> Callable[..., Any]:
        """
        Return the module-level function *name*.

        Raises:
            ScriptError: If the script has no callable with that name.
        """
        fn = getattr(self.module, name, None)
        if not callable(fn):
            raise ScriptError(f"{self.path.name} has no function {name!r}")
        return fn


def _optional_callable(module: ModuleType, name: str) -> Callable[..., Any] | None:
    value = getattr(module, name, None)
    if value is None:
        return None
    if not callable(value):
        raise ScriptError(f"{name} in {module.__name__} must be a function")
    return value


def import_script(path: Path) -> ModuleType:
    """
    Import *path* as a fresh module.

    Raises:
        ScriptError: If the file is missing or raises while importing.
    """
    path = Path(path).resolve()
    if not path.is_file():
        raise ScriptError(f"Script not found: {path}")

    script_dir = str(path.parent)
    if script_dir not in sys.path:
        sys.path.insert(0, script_dir)

    module_name = f"vuload_script_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ScriptError(f"Cannot import {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(module_name, None)
        raise ScriptError(f"Failed to import {path.name}: {exc}") from exc
    return module


def load_script(path: str | Path) -> LoadScript:
    """
    Import a load script and collect its options and functions.

    Raises:
        ScriptError: If the script cannot be imported or is malformed.
    """
    path = Path(path)
    module = import_script(path)

    options = getattr(module, "options", None) or {}
    if not isinstance(options, Mapping):
        raise ScriptError(f"'options' in {path.name} must be a dict")

    metrics = [value for value in vars(module).values() if isinstance(value, MetricHandle)]
    script = LoadScript(
        path=path,
        module=module,
        options=copy.deepcopy(dict(options)),
        setup=_optional_callable(module, "setup"),
        teardown=_optional_callable(module, "teardown"),
        handle_summary=_optional_callable(module, "handle_summary"),
        metrics=metrics,
    )
    logger.debug(
        "Loaded %s: %d custom metrics, setup=%s, teardown=%s",
        path.name,
        len(metrics),
        script.setup is not None,
        script.teardown is not None,
    )
    return script


def load_yaml(path: str | Path) -> dict[str, Any]:
    """
    Read a YAML mapping from *path*.

    Raises:
        OptionsError: If the file is missing, invalid, or not a mapping.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise OptionsError(f"Cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise OptionsError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, Mapping):
        raise OptionsError(f"{path} must contain a mapping at the top level")
    return dict(data)


def merge_options(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """
    Merge *override* over *base*.

    Top-level keys replace, except ``thresholds`` which merge per metric
    (an override for one metric replaces that metric's list only).
    """
    merged = dict(base)
    for key, value in override.items():
        if key == "thresholds" and isinstance(value, Mapping):
            thresholds = dict(merged.get("thresholds") or {})
            thresholds.update(value)
            merged["thresholds"] = thresholds
        else:
            merged[key] = value
    return merged


def load_thresholds_file(path: str | Path) -> dict[str, Any]:
    """
    Read a thresholds YAML file.

    The file may either map metric names to expressions directly or nest
    them under a ``thresholds`` key.
    """
    data = load_yaml(path)
    thresholds = data.get("thresholds", data)
    if not isinstance(thresholds, Mapping):
        raise OptionsError(f"{path}: 'thresholds' must be a mapping")
    return dict(thresholds)

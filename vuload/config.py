"""
Configuration Classes for the load engine.

Centralises every environment-dependent engine setting (default target,
timeouts, scheduling granularity, metric retention) into a hierarchy of
configuration classes.  The base ``Config`` class defines sensible
defaults, while subclasses override only what differs per environment.

Per-run values that belong to a load script (stages, thresholds) are not
configuration; they live in the script's ``options``.

Key Concepts Demonstrated:
- Class-based configuration with inheritance
- Environment-variable overrides for twelve-factor compliance
- A fast profile for the engine's own test-suite
"""

from __future__ import annotations

import os


def _env_float(name: str, default: float) -> float:
    """Read a float from the environment, falling back to *default*."""
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be numeric, got {raw!r}.") from exc


class Config:
    """
    Base configuration with production-safe defaults.

    Attributes:
        BASE_URL: Target used when a script issues relative URLs and no
            ``BASE_URL`` override is given on the command line.
        HTTP_TIMEOUT: Default per-call timeout in seconds; scripts may
            pass their own ``timeout`` on every call.
        THRESHOLD_INTERVAL: Seconds between in-run threshold evaluations.
        GRACEFUL_STOP: Seconds in-flight iterations get to finish after a
            scenario's curve has elapsed, unless the scenario sets its own.
        SCHEDULER_TICK: Granularity (seconds) of the VU reconcile loop.
        TREND_MAX_SAMPLES: Exact samples retained per trend before the
            trend switches to reservoir sampling.
        SUMMARY_TREND_STATS: Trend aggregates shown in the summary.
    """

    BASE_URL: str = os.environ.get("BASE_URL", "http://localhost:3000")
    HTTP_TIMEOUT: float = _env_float("VULOAD_HTTP_TIMEOUT", 60.0)
    THRESHOLD_INTERVAL: float = _env_float("VULOAD_THRESHOLD_INTERVAL", 2.0)
    GRACEFUL_STOP: float = _env_float("VULOAD_GRACEFUL_STOP", 30.0)
    SCHEDULER_TICK: float = _env_float("VULOAD_SCHEDULER_TICK", 0.1)
    TREND_MAX_SAMPLES: int = int(_env_float("VULOAD_TREND_MAX_SAMPLES", 100_000))
    LOG_LEVEL: str = os.environ.get("VULOAD_LOG_LEVEL", "INFO")
    USER_AGENT: str = os.environ.get("VULOAD_USER_AGENT", "vuload/0.1")
    SUMMARY_TREND_STATS: tuple[str, ...] = ("avg", "min", "med", "max", "p(90)", "p(95)", "p(99)")


class DevelopmentConfig(Config):
    """Local runs: verbose logging, otherwise base defaults."""

    LOG_LEVEL: str = os.environ.get("VULOAD_LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    """
    Configuration for the engine's own test-suite.

    Short intervals keep integration tests quick; the trend cap is small
    so reservoir sampling is reachable without millions of samples.
    """

    __test__ = False

    HTTP_TIMEOUT: float = 5.0
    THRESHOLD_INTERVAL: float = 0.1
    GRACEFUL_STOP: float = 2.0
    SCHEDULER_TICK: float = 0.02
    TREND_MAX_SAMPLES: int = 10_000
    LOG_LEVEL: str = "WARNING"


class ProductionConfig(Config):
    """CI and shared load-generator hosts."""

    LOG_LEVEL: str = os.environ.get("VULOAD_LOG_LEVEL", "INFO")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": ProductionConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Look up and return the configuration class for the given environment.

    Args:
        env: Environment name (``"development"``, ``"testing"``,
            ``"production"``).  When ``None``, falls back to the
            ``VULOAD_ENV`` environment variable, defaulting to
            ``"production"``.

    Returns:
        The configuration class (not an instance) for the environment.
    """
    if env is None:
        env = os.environ.get("VULOAD_ENV", "production")
    return config.get(env, config["default"])

"""
Load profiles: the declarative half of a scenario.

A load script describes *how much* load to apply as plain data, either
through shortcut keys (``vus``, ``duration``, ``iterations``,
``stages``) or an explicit ``scenarios`` mapping.  This module turns that
data into immutable scenario objects, one frozen dataclass per executor
type, and compiles every one of them to a common :class:`TargetCurve`
that the scheduler samples over time.

Key Concepts Demonstrated:
- Tagged variant over executor types, built from a registry of classes
- Piecewise-linear target curves shared by concurrency and rate profiles
- Accepting both k6-style camelCase and snake_case option keys
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

from vuload.exceptions import OptionsError

DEFAULT_SCENARIO_NAME = "default"
DEFAULT_EXEC = "default"
DEFAULT_MAX_DURATION = 600.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}

# camelCase spellings used by k6 scripts -> dataclass field names.
_KEY_ALIASES = {
    "startVUs": "start_vus",
    "preAllocatedVUs": "pre_allocated_vus",
    "maxVUs": "max_vus",
    "timeUnit": "time_unit",
    "startRate": "start_rate",
    "startTime": "start_time",
    "gracefulStop": "graceful_stop",
    "maxDuration": "max_duration",
    "exec": "exec_name",
}
_DURATION_FIELDS = {"duration", "time_unit", "start_time", "graceful_stop", "max_duration"}


def parse_duration(value: Any) -> float:
    """
    Convert a duration option to seconds.

    Numbers are taken as seconds.  Strings are a concatenation of
    ``<number><unit>`` parts with units ``h``, ``m``, ``s`` and ``ms``,
    e.g. ``"2m"``, ``"1m30s"`` or ``"500ms"``.

    Raises:
        OptionsError: If the value is negative or not a valid duration.
    """
    if isinstance(value, bool):
        raise OptionsError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            seconds = 0.0
            position = 0
            for match in _DURATION_PART.finditer(text):
                if match.start() != position:
                    break
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                position = match.end()
            if position == 0 or position != len(text):
                raise OptionsError(f"Invalid duration: {value!r}") from None
    else:
        raise OptionsError(f"Invalid duration: {value!r}")

    if seconds < 0 or math.isnan(seconds):
        raise OptionsError(f"Duration must not be negative: {value!r}")
    return seconds


@dataclass(frozen=True)
class Stage:
    """A span of ``duration`` seconds ramping linearly towards ``target``."""

    duration: float
    target: float

    @classmethod
    def from_option(cls, data: Any) -> Stage:
        if isinstance(data, Stage):
            return data
        if not isinstance(data, Mapping) or "duration" not in data or "target" not in data:
            raise OptionsError(f"A stage needs 'duration' and 'target': {data!r}")
        target = data["target"]
        if isinstance(target, bool) or not isinstance(target, (int, float)) or target < 0:
            raise OptionsError(f"Stage target must be a non-negative number: {target!r}")
        return cls(duration=parse_duration(data["duration"]), target=float(target))


@dataclass(frozen=True)
class TargetCurve:
    """
    Piecewise-linear function of elapsed time.

    The curve starts at ``start`` and each stage moves linearly from the
    previous target to its own over its duration.  After the last stage
    the final target holds.  Concurrency profiles read it as a VU count,
    rate profiles as iterations per second.
    """

    start: float
    stages: tuple[Stage, ...] = ()

    @property
    def duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @property
    def max_value(self) -> float:
        return max([self.start, *(stage.target for stage in self.stages)])

    def value_at(self, elapsed: float) -> float:
        """Return the interpolated target at *elapsed* seconds."""
        previous = self.start
        offset = 0.0
        for stage in self.stages:
            if elapsed < offset + stage.duration:
                if stage.duration <= 0:
                    return stage.target
                progress = (elapsed - offset) / stage.duration
                return previous + (stage.target - previous) * max(progress, 0.0)
            offset += stage.duration
            previous = stage.target
        return previous

    def arrival_times(self) -> Iterator[float]:
        """
        Yield the instants at which the integrated rate crosses 0, 1, 2, ...

        Treating the curve as a rate per second, arrival *k* happens at the
        time ``t`` where the area under the curve from 0 to ``t`` equals
        ``k``.  Inside a stage the area is quadratic in ``t``, so each
        crossing is found in closed form.  Only arrivals strictly before
        the end of the curve are produced.
        """
        area_before = 0.0
        offset = 0.0
        previous = self.start
        next_arrival = 0
        for stage in self.stages:
            r0 = previous
            slope = (stage.target - r0) / stage.duration if stage.duration > 0 else 0.0
            stage_area = (r0 + stage.target) / 2.0 * stage.duration
            while next_arrival < area_before + stage_area:
                t = _solve_stage_time(r0, slope, next_arrival - area_before)
                if t is None or t >= stage.duration:
                    break
                yield offset + t
                next_arrival += 1
            area_before += stage_area
            offset += stage.duration
            previous = stage.target


def _solve_stage_time(r0: float, slope: float, area: float) -> float | None:
    """Smallest ``t >= 0`` with ``r0*t + slope*t*t/2 == area``."""
    if area <= 0:
        return 0.0
    if abs(slope) < 1e-12:
        return area / r0 if r0 > 0 else None
    a = slope / 2.0
    discriminant = r0 * r0 + 4.0 * a * area
    if discriminant < 0:
        return None
    root = math.sqrt(discriminant)
    candidates = [t for t in ((-r0 + root) / (2 * a), (-r0 - root) / (2 * a)) if t >= 0]
    return min(candidates) if candidates else None


# =====================================================================
# Executor profiles
# =====================================================================


@dataclass(frozen=True, kw_only=True)
class Scenario:
    """
    Settings shared by every executor.

    Attributes:
        name: Scenario name, also attached to samples as the
            ``scenario`` tag.
        exec_name: Name of the script function each iteration calls.
        start_time: Offset (seconds) from the run start.
        graceful_stop: Seconds in-flight iterations may keep running once
            the scenario is over; ``None`` means the engine default.
        tags: Extra tags attached to every sample of this scenario.
    """

    executor: ClassVar[str] = ""
    is_arrival_rate: ClassVar[bool] = False

    name: str = DEFAULT_SCENARIO_NAME
    exec_name: str = DEFAULT_EXEC
    start_time: float = 0.0
    graceful_stop: float | None = None
    tags: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.start_time < 0:
            raise OptionsError(f"{self.name}: startTime must not be negative")

    def curve(self) -> TargetCurve:
        raise NotImplementedError

    @property
    def duration(self) -> float:
        return self.curve().duration

    @property
    def max_vus(self) -> int:
        return int(self.curve().max_value)


def _require_non_negative(scenario: str, **values: float) -> None:
    for key, value in values.items():
        if value < 0:
            raise OptionsError(f"{scenario}: {key} must not be negative, got {value}")


@dataclass(frozen=True, kw_only=True)
class ConstantVUs(Scenario):
    """A fixed number of VUs looping for a fixed duration."""

    executor: ClassVar[str] = "constant-vus"

    vus: int = 1
    duration_s: float | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.duration_s is None:
            raise OptionsError(f"{self.name}: constant-vus needs a duration")
        _require_non_negative(self.name, vus=self.vus, duration=self.duration_s)

    def curve(self) -> TargetCurve:
        return TargetCurve(start=self.vus, stages=(Stage(self.duration_s, self.vus),))


@dataclass(frozen=True, kw_only=True)
class RampingVUs(Scenario):
    """VU count follows ``stages`` starting from ``start_vus``."""

    executor: ClassVar[str] = "ramping-vus"

    start_vus: int = 1
    stages: tuple[Stage, ...] = ()

    def __post_init__(self) -> None:
        super().__post_init__()
        _require_non_negative(self.name, start_vus=self.start_vus)
        if not self.stages:
            raise OptionsError(f"{self.name}: ramping-vus needs at least one stage")

    def curve(self) -> TargetCurve:
        return TargetCurve(start=self.start_vus, stages=self.stages)


@dataclass(frozen=True, kw_only=True)
class PerVUIterations(Scenario):
    """Each of ``vus`` VUs runs exactly ``iterations`` iterations."""

    executor: ClassVar[str] = "per-vu-iterations"

    vus: int = 1
    iterations: int = 1
    max_duration: float = DEFAULT_MAX_DURATION

    def __post_init__(self) -> None:
        super().__post_init__()
        _require_non_negative(self.name, vus=self.vus, iterations=self.iterations)

    def curve(self) -> TargetCurve:
        return TargetCurve(start=self.vus, stages=(Stage(self.max_duration, self.vus),))


@dataclass(frozen=True, kw_only=True)
class SharedIterations(Scenario):
    """``vus`` VUs share a pool of ``iterations`` iterations."""

    executor: ClassVar[str] = "shared-iterations"

    vus: int = 1
    iterations: int = 1
    max_duration: float = DEFAULT_MAX_DURATION

    def __post_init__(self) -> None:
        super().__post_init__()
        _require_non_negative(self.name, vus=self.vus, iterations=self.iterations)

    def curve(self) -> TargetCurve:
        return TargetCurve(start=self.vus, stages=(Stage(self.max_duration, self.vus),))


@dataclass(frozen=True, kw_only=True)
class _ArrivalRate(Scenario):
    is_arrival_rate: ClassVar[bool] = True

    time_unit: float = 1.0
    pre_allocated_vus: int = 1
    max_vus_limit: int | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.time_unit <= 0:
            raise OptionsError(f"{self.name}: timeUnit must be positive")
        _require_non_negative(self.name, pre_allocated_vus=self.pre_allocated_vus)
        if self.max_vus_limit is not None and self.max_vus_limit < self.pre_allocated_vus:
            raise OptionsError(f"{self.name}: maxVUs must be >= preAllocatedVUs")

    @property
    def max_vus(self) -> int:
        if self.max_vus_limit is None:
            return self.pre_allocated_vus
        return self.max_vus_limit


@dataclass(frozen=True, kw_only=True)
class ConstantArrivalRate(_ArrivalRate):
    """Start ``rate`` iterations per ``time_unit`` for ``duration``."""

    executor: ClassVar[str] = "constant-arrival-rate"

    rate: float = 1.0
    duration_s: float | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.duration_s is None:
            raise OptionsError(f"{self.name}: constant-arrival-rate needs a duration")
        _require_non_negative(self.name, rate=self.rate, duration=self.duration_s)

    def curve(self) -> TargetCurve:
        per_second = self.rate / self.time_unit
        return TargetCurve(start=per_second, stages=(Stage(self.duration_s, per_second),))


@dataclass(frozen=True, kw_only=True)
class RampingArrivalRate(_ArrivalRate):
    """Arrival rate follows ``stages`` starting from ``start_rate``."""

    executor: ClassVar[str] = "ramping-arrival-rate"

    start_rate: float = 0.0
    stages: tuple[Stage, ...] = ()

    def __post_init__(self) -> None:
        super().__post_init__()
        _require_non_negative(self.name, start_rate=self.start_rate)
        if not self.stages:
            raise OptionsError(f"{self.name}: ramping-arrival-rate needs at least one stage")

    def curve(self) -> TargetCurve:
        unit = self.time_unit
        return TargetCurve(
            start=self.start_rate / unit,
            stages=tuple(Stage(stage.duration, stage.target / unit) for stage in self.stages),
        )


EXECUTORS: dict[str, type[Scenario]] = {
    cls.executor: cls
    for cls in (
        ConstantVUs,
        RampingVUs,
        PerVUIterations,
        SharedIterations,
        ConstantArrivalRate,
        RampingArrivalRate,
    )
}


# =====================================================================
# Options -> scenarios
# =====================================================================


def _normalise_keys(data: Mapping[str, Any]) -> dict[str, Any]:
    normalised: dict[str, Any] = {}
    for key, value in data.items():
        normalised[_KEY_ALIASES.get(key, key)] = value
    return normalised


def _as_int(scenario: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise OptionsError(f"{scenario}: {key} must be an integer, got {value!r}")
    return int(value)


def scenario_from_dict(name: str, data: Mapping[str, Any]) -> Scenario:
    """
    Build one scenario from its option mapping.

    Args:
        name: Scenario name (key in ``options["scenarios"]``).
        data: The scenario options; must contain ``executor``.

    Returns:
        The frozen scenario object for the requested executor.

    Raises:
        OptionsError: On an unknown executor, unknown keys or bad values.
    """
    values = _normalise_keys(data)
    executor = values.pop("executor", None)
    cls = EXECUTORS.get(executor)
    if cls is None:
        raise OptionsError(
            f"{name}: unknown executor {executor!r}; expected one of {sorted(EXECUTORS)}"
        )

    kwargs: dict[str, Any] = {"name": name}
    for key, value in values.items():
        if key in _DURATION_FIELDS:
            seconds = parse_duration(value)
            # ``duration`` collides with the computed property.
            kwargs["duration_s" if key == "duration" else key] = seconds
        elif key == "stages":
            if not isinstance(value, (list, tuple)):
                raise OptionsError(f"{name}: stages must be a list")
            kwargs["stages"] = tuple(Stage.from_option(stage) for stage in value)
        elif key == "max_vus":
            kwargs["max_vus_limit"] = _as_int(name, key, value)
        elif key in {"vus", "start_vus", "pre_allocated_vus", "iterations"}:
            kwargs[key] = _as_int(name, key, value)
        elif key in {"rate", "start_rate"}:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise OptionsError(f"{name}: {key} must be a number, got {value!r}")
            kwargs[key] = float(value)
        elif key == "tags":
            if not isinstance(value, Mapping):
                raise OptionsError(f"{name}: tags must be a mapping")
            kwargs["tags"] = {str(k): str(v) for k, v in value.items()}
        elif key == "exec_name":
            kwargs["exec_name"] = str(value)
        else:
            raise OptionsError(f"{name}: unsupported option {key!r} for {executor}")

    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise OptionsError(f"{name}: invalid options for {executor}: {exc}") from exc


def scenarios_from_options(options: Mapping[str, Any]) -> list[Scenario]:
    """
    Build the scenario list for a run.

    An explicit ``scenarios`` mapping wins.  Otherwise the shortcut keys
    are converted the way k6 does it: ``stages`` -> ramping-vus,
    ``iterations`` -> shared-iterations, ``duration`` -> constant-vus and
    nothing at all -> a single iteration on a single VU.
    """
    scenarios = options.get("scenarios")
    if scenarios:
        if not isinstance(scenarios, Mapping):
            raise OptionsError("'scenarios' must be a mapping of name -> options")
        return [scenario_from_dict(str(name), data) for name, data in scenarios.items()]

    vus = options.get("vus")
    shortcut: dict[str, Any]
    if options.get("stages"):
        shortcut = {"executor": "ramping-vus", "stages": options["stages"]}
        shortcut["startVUs"] = 1 if vus is None else vus
    elif options.get("iterations"):
        shortcut = {
            "executor": "shared-iterations",
            "iterations": options["iterations"],
            "vus": 1 if vus is None else vus,
        }
        if options.get("duration"):
            shortcut["maxDuration"] = options["duration"]
    elif options.get("duration"):
        shortcut = {
            "executor": "constant-vus",
            "duration": options["duration"],
            "vus": 1 if vus is None else vus,
        }
    else:
        shortcut = {"executor": "shared-iterations", "iterations": 1, "vus": 1 if vus is None else vus}
    return [scenario_from_dict(DEFAULT_SCENARIO_NAME, shortcut)]


def apply_overrides(
    options: Mapping[str, Any],
    *,
    vus: int | None = None,
    duration: str | float | None = None,
    iterations: int | None = None,
    stages: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """
    Return a copy of *options* with command-line overrides applied.

    ``duration``, ``iterations`` and ``stages`` replace whatever load
    profile the script declared (including its ``scenarios``).  ``vus`` on
    its own only adjusts shortcut profiles; a multi-scenario script has no
    single VU count to replace.
    """
    merged = dict(options)
    replaces_profile = duration is not None or iterations is not None or bool(stages)

    if replaces_profile:
        merged.pop("scenarios", None)
        for key in ("stages", "duration", "iterations"):
            merged.pop(key, None)
        if stages:
            merged["stages"] = stages
        if duration is not None:
            merged["duration"] = duration
        if iterations is not None:
            merged["iterations"] = iterations
    elif vus is not None and merged.get("scenarios"):
        raise OptionsError(
            "--vus alone cannot override a script with explicit scenarios; "
            "combine it with --duration, --iterations or --stage"
        )

    if vus is not None:
        merged["vus"] = vus
    return merged


def parse_stage_flag(value: str) -> dict[str, Any]:
    """Parse a ``--stage DURATION:TARGET`` flag value, e.g. ``30s:10``."""
    duration, sep, target = value.partition(":")
    if not sep:
        raise OptionsError(f"Stage must look like DURATION:TARGET, got {value!r}")
    try:
        target_value = int(target)
    except ValueError as exc:
        raise OptionsError(f"Stage target must be an integer, got {target!r}") from exc
    parse_duration(duration)
    return {"duration": duration, "target": target_value}

"""
Command-line interface.

``vuload run`` executes a load script::

    vuload run scenarios/baseline.py --vus 20 --duration 1m \\
        -e BASE_URL=http://staging:3000 --summary-export summary.json

``vuload check`` re-evaluates thresholds against an exported summary,
so CI can gate on a different SLA without re-running the load::

    vuload check --summary summary.json --thresholds scenarios/thresholds.yml

Exit codes follow a three-state convention, plus one for aborted runs,
so that CI can distinguish "thresholds breached" from "script crashed":

- ``0`` -- all thresholds passed
- ``1`` -- at least one threshold was breached
- ``2`` -- the script itself failed (load error, bad options, setup,
  teardown, or results that could not be written)
- ``3`` -- the run was aborted (abort-on-fail threshold or script)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from vuload.config import get_config
from vuload.exceptions import OptionsError, ScriptError, VuloadError
from vuload.outputs import JsonLinesOutput, parse_output_flag
from vuload.profiles import apply_overrides, parse_stage_flag
from vuload.runner import RunResult, Runner
from vuload.script import LoadScript, load_script, load_thresholds_file, load_yaml, merge_options
from vuload.summary import render_text, summary_values, write_outputs
from vuload.thresholds import ThresholdEvaluator, all_passed, parse_thresholds

logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_SCRIPT_ERROR = 2
EXIT_ABORTED = 3


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for ``vuload``."""
    parser = argparse.ArgumentParser(
        prog="vuload",
        description="Virtual-user load generator with SLA thresholds.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: from VULOAD_LOG_LEVEL / environment profile)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a load script")
    run.add_argument("script", type=Path, help="Path to the load script (.py)")
    run.add_argument(
        "-e",
        "--env",
        dest="env_vars",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Variable exposed to the script as ctx.env[KEY] (repeatable)",
    )
    run.add_argument("--vus", type=int, help="Number of virtual users")
    run.add_argument("--duration", help="Test duration, e.g. 30s or 1m30s")
    run.add_argument("--iterations", type=int, help="Total iterations shared by all VUs")
    run.add_argument(
        "--stage",
        action="append",
        default=[],
        metavar="DURATION:TARGET",
        help="Ramping stage, e.g. 30s:10 (repeatable)",
    )
    run.add_argument("--config", type=Path, help="YAML file merged over the script's options")
    run.add_argument("--thresholds", type=Path, help="YAML file with extra thresholds")
    run.add_argument("--summary-export", type=Path, help="Write the summary as JSON")
    run.add_argument(
        "--out",
        action="append",
        default=[],
        metavar="json=FILE",
        help="Stream every sample as JSON lines to FILE",
    )
    run.add_argument("--base-url", help="Base URL for relative requests (default: BASE_URL)")
    run.add_argument("-q", "--quiet", action="store_true", help="Do not print the summary table")

    check = subparsers.add_parser("check", help="Check an exported summary against thresholds")
    check.add_argument("--summary", required=True, type=Path, help="Summary JSON from --summary-export")
    check.add_argument("--thresholds", required=True, type=Path, help="Thresholds YAML file")
    return parser


def parse_env(pairs: Sequence[str]) -> dict[str, str]:
    """
    Parse ``KEY=VALUE`` pairs.

    Raises:
        OptionsError: If an entry has no ``=`` or an empty key.
    """
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise OptionsError(f"Expected KEY=VALUE, got {pair!r}")
        env[key.strip()] = value
    return env


def prepare_script(args: argparse.Namespace) -> LoadScript:
    """Load the script and apply ``--config``, ``--thresholds`` and profile flags."""
    script = load_script(args.script)
    options = script.options
    if args.config is not None:
        options = merge_options(options, load_yaml(args.config))
    if args.thresholds is not None:
        options = merge_options(options, {"thresholds": load_thresholds_file(args.thresholds)})
    stages = [parse_stage_flag(stage) for stage in args.stage]
    script.options = apply_overrides(
        options,
        vus=args.vus,
        duration=args.duration,
        iterations=args.iterations,
        stages=stages or None,
    )
    return script


def exit_code_for(result: RunResult) -> int:
    if result.aborted:
        return EXIT_ABORTED
    if result.teardown_failed:
        return EXIT_SCRIPT_ERROR
    return EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH


def _report(script: LoadScript, result: RunResult, args: argparse.Namespace) -> None:
    if args.summary_export is not None:
        write_outputs({str(args.summary_export): result.summary})
        logger.info("Summary exported to %s", args.summary_export)

    if script.handle_summary is not None:
        try:
            outputs = script.handle_summary(result.summary)
        except Exception as exc:
            raise ScriptError(f"handle_summary() raised {type(exc).__name__}: {exc}") from exc
        if outputs is not None:
            if not isinstance(outputs, Mapping):
                raise ScriptError("handle_summary() must return a dict of destination -> content")
            write_outputs(outputs)
            return

    if not args.quiet:
        print(render_text(result.summary))


def _run(args: argparse.Namespace) -> int:
    config = get_config()
    outputs: list[JsonLinesOutput] = []
    try:
        script = prepare_script(args)
        env = parse_env(args.env_vars)
        outputs = [parse_output_flag(value) for value in args.out]
        for output in outputs:
            output.start()
        try:
            result = Runner(
                script,
                config=config,
                env=env,
                base_url=args.base_url,
                outputs=outputs,
            ).run()
        finally:
            for output in outputs:
                output.close()
        _report(script, result, args)
    except (VuloadError, OSError) as exc:
        logger.error("%s", exc)
        print(f"Load test failed: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR
    except Exception as exc:
        logger.exception("Unexpected error while running %s", args.script)
        print(f"Load test failed: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    code = exit_code_for(result)
    logger.info("Run finished in %.1fs with exit code %d", result.duration_s, code)
    return code


def _check(args: argparse.Namespace) -> int:
    try:
        with args.summary.open("r", encoding="utf-8") as handle:
            summary: dict[str, Any] = json.load(handle)
        evaluator = ThresholdEvaluator(parse_thresholds(load_thresholds_file(args.thresholds)))
        results = evaluator.evaluate_values(summary_values(summary))
    except (OSError, ValueError, VuloadError) as exc:
        print(f"Threshold check failed: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR

    metrics = summary.setdefault("metrics", {})
    for entry in metrics.values():
        entry.pop("thresholds", None)
    for result in results:
        entry = metrics.setdefault(
            result.metric, {"type": "", "contains": "default", "values": {}}
        )
        entry.setdefault("thresholds", {})[result.expression] = {
            "ok": result.ok,
            "observed": result.observed,
        }
    passed = all_passed(results)
    summary.setdefault("state", {})["thresholdsPassed"] = passed
    print(render_text(summary))
    return EXIT_PASS if passed else EXIT_THRESHOLD_BREACH


def main(argv: Sequence[str] | None = None) -> int:
    """
    Entry point for the ``vuload`` console script.

    Returns:
        One of the ``EXIT_*`` codes.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=(args.log_level or get_config().LOG_LEVEL).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if args.command == "run":
        return _run(args)
    return _check(args)


if __name__ == "__main__":
    raise SystemExit(main())

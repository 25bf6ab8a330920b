from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from dataclasses import replace
from pathlib import Path

from votesim.api.report import build_simulation_report
from votesim.core.engine import WorkloadEngine
from votesim.core.mix import load_mix_file
from votesim.core.models import Mode, Operation, SimulationConfig
from votesim.core.stages import parse_duration_to_seconds, parse_stages
from votesim.core.target_client import TargetClient
from votesim.exceptions import ConfigurationError, TargetError, ValidationError
from votesim.fixtures.voting_target import VotingFixtureServer
from votesim.logger import session_logger as logger
from votesim.scenarios.checks import run_duplicate_check, run_expiration_check
from votesim.scenarios.presets import SCENARIOS, build_scenario_config

_CHECKS = ("duplicate-check", "expiration-check")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="votesim load generator and consistency verifier")
    parser.add_argument(
        "--scenario",
        type=str,
        choices=["custom", *sorted(SCENARIOS), *_CHECKS],
        default="custom",
        help="Preset scenario, a deterministic check, or custom (default)",
    )
    parser.add_argument(
        "--mode",
        type=str,
        choices=[m.value for m in Mode],
        default=Mode.LIVE.value,
        help="live: hit --base-url; fixture: start an in-process voting API",
    )
    parser.add_argument(
        "--base-url",
        type=str,
        default=os.environ.get("VOTESIM_BASE_URL", "http://localhost:8080"),
        help="Target base URL (env VOTESIM_BASE_URL)",
    )
    parser.add_argument(
        "--api-prefix",
        type=str,
        default=os.environ.get("VOTESIM_API_PREFIX", "/api/v1"),
        help="Path prefix of the voting endpoints (env VOTESIM_API_PREFIX)",
    )
    parser.add_argument("--actors", type=int, default=None, help="Concurrent actors (custom scenario)")
    parser.add_argument(
        "--stages",
        type=str,
        default=None,
        help="Ramp shape, e.g. '30s:10,1m:50,30s:0'. Overrides --actors/--duration.",
    )
    parser.add_argument("--rate", type=float, default=None, help="Per-actor iteration rate (iterations/sec)")
    parser.add_argument(
        "--total-iterations",
        type=int,
        default=None,
        help="Total iterations across all actors (optional if --duration is set)",
    )
    parser.add_argument("--duration", type=str, default=None, help="Run duration (e.g. 30s, 5m)")
    parser.add_argument("--mix-file", type=str, default=None, help="Operation mix JSON file")
    parser.add_argument("--yes-ratio", type=float, default=None, help="Share of Yes votes (default 0.6)")
    parser.add_argument(
        "--verify-probability",
        type=float,
        default=None,
        help="Probability that an iteration samples consistency (default 0.05)",
    )
    parser.add_argument("--timeout-seconds", type=float, default=30.0, help="HTTP timeout per request")
    parser.add_argument(
        "--fast-fail-ms",
        type=float,
        default=10.0,
        help="503 responses faster than this are classified as circuit-open",
    )
    parser.add_argument("--window-minutes", type=int, default=None, help="Voting window opened for the run")
    parser.add_argument("--seed", type=int, default=None, help="Seed for reproducible operation/choice draws")
    parser.add_argument(
        "--expiration-wait",
        type=str,
        default="70s",
        help="How long expiration-check waits after opening a 1-minute window",
    )
    parser.add_argument(
        "--fixture-seconds-per-minute",
        type=float,
        default=60.0,
        help="Fixture mode only: wall-clock seconds per voting-window minute (load runs and checks)",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--verbose", action="store_true", help="Log debug events")
    parser.add_argument("--output", type=str, default=None, help="Write summary report JSON to this path")
    return parser


def _build_config(args, duration_seconds: float | None) -> SimulationConfig:
    overrides: dict[str, object] = {}

    if args.stages:
        stages = parse_stages(args.stages)
        overrides["stages"] = stages
        overrides["actors"] = max(s.target for s in stages)
        overrides["duration_seconds"] = sum(s.duration_seconds for s in stages)
    if args.mix_file:
        weights, yes_ratio = load_mix_file(args.mix_file)
        overrides["operation_weights"] = weights
        overrides["yes_ratio"] = yes_ratio
    if args.yes_ratio is not None:
        overrides["yes_ratio"] = args.yes_ratio
    if args.rate is not None:
        overrides["rate_per_actor_per_sec"] = args.rate
    if args.verify_probability is not None:
        overrides["verify_probability"] = args.verify_probability
    if args.window_minutes is not None:
        overrides["window_minutes"] = args.window_minutes
    if args.total_iterations is not None:
        overrides["total_iterations"] = args.total_iterations
    if args.seed is not None:
        overrides["seed"] = args.seed
    overrides["fast_fail_ms"] = args.fast_fail_ms
    overrides["fixture_seconds_per_minute"] = args.fixture_seconds_per_minute

    if args.scenario != "custom":
        if duration_seconds is not None and not args.stages:
            # A preset stretched to a custom duration runs at its peak actor count.
            overrides["stages"] = ()
            overrides["duration_seconds"] = duration_seconds
        if args.actors is not None and not args.stages:
            overrides["stages"] = ()
            overrides["actors"] = args.actors
        return build_scenario_config(
            args.scenario,
            base_url=args.base_url,
            mode=Mode(args.mode),
            timeout_seconds=args.timeout_seconds,
            api_prefix=args.api_prefix,
            **overrides,
        )

    if args.actors is None and not args.stages:
        raise ConfigurationError("custom scenario needs --actors or --stages")
    if duration_seconds is None and args.total_iterations is None and not args.stages:
        raise ConfigurationError("custom scenario needs --duration, --total-iterations or --stages")

    config = SimulationConfig(
        mode=Mode(args.mode),
        base_url=args.base_url,
        actors=args.actors or 0,
        duration_seconds=duration_seconds,
        total_iterations=None,
        rate_per_actor_per_sec=10.0,
        timeout_seconds=args.timeout_seconds,
        api_prefix=args.api_prefix,
        operation_weights={Operation.VOTE_FRESH.value: 1.0},
    )
    return replace(config, **overrides)


def _run_check(args) -> int:
    """Run duplicate-check or expiration-check and return the exit code."""
    try:
        wait_seconds = parse_duration_to_seconds(args.expiration_wait)
    except ValueError as exc:
        logger.error(
            "sim.invalid_duration",
            event="sim.invalid_duration",
            provided=args.expiration_wait,
            error=str(exc),
        )
        return 2

    async def _check(base_url: str) -> int:
        async with TargetClient(
            base_url,
            timeout_seconds=args.timeout_seconds,
            api_prefix=args.api_prefix,
            fast_fail_ms=args.fast_fail_ms,
            logger=logger,
        ) as client:
            if args.scenario == "duplicate-check":
                result = await run_duplicate_check(client, logger=logger)
            else:
                result = await run_expiration_check(client, wait_seconds=wait_seconds, logger=logger)
        return 0 if result.passed else 1

    try:
        if args.mode == Mode.FIXTURE.value:
            with VotingFixtureServer(
                api_prefix=args.api_prefix,
                seconds_per_minute=args.fixture_seconds_per_minute,
                logger=logger,
            ) as server:
                return asyncio.run(_check(server.base_url))
        return asyncio.run(_check(args.base_url))
    except (TargetError, RuntimeError) as exc:
        logger.error(
            "sim.check_failed",
            event="sim.check_failed",
            scenario=args.scenario,
            error_type=type(exc).__name__,
            error=str(exc),
            recovery="Ensure the target is running and reachable at --base-url",
        )
        return 1


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logger.set_level(logging.DEBUG)
    if args.json_logs:
        logger.use_json(True)

    if args.scenario in _CHECKS:
        return _run_check(args)

    duration_seconds = None
    if args.duration is not None:
        try:
            duration_seconds = parse_duration_to_seconds(args.duration)
        except ValueError as exc:
            logger.error(
                "sim.invalid_duration",
                event="sim.invalid_duration",
                provided=args.duration,
                error=str(exc),
            )
            return 2

    try:
        config = _build_config(args, duration_seconds)
    except (ConfigurationError, ValidationError) as exc:
        logger.error(
            "sim.invalid_config",
            event="sim.invalid_config",
            error=str(exc),
            recovery="See --help for the accepted flags",
        )
        return 2

    engine = WorkloadEngine(config, logger=logger)
    try:
        result = asyncio.run(engine.run())
    except (ConfigurationError, ValidationError) as exc:
        logger.error(
            "sim.invalid_config",
            event="sim.invalid_config",
            error=str(exc),
            recovery="See --help for the accepted flags",
        )
        return 2

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        payload = build_simulation_report(config, result)
        output_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")

        logger.info(
            "sim.report_written",
            event="sim.report_written",
            path=str(output_path),
        )

    return 0 if result.passed else 1


if __name__ == "__main__":
    raise SystemExit(main())

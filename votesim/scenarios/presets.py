"""Pre-built workload scenarios.

Each preset is a stage table plus an operation mix; the engine does the rest.
Stage shapes:

    smoke       5 actors for 1m
    load        0 -> 50 over 2m, hold 5m, ramp down 2m
    stress      0 -> 200 over 5m, hold 5m, peak 300 over 2m, ramp down 2m
    spike       10 for 2m, 200 in 10s, hold 1m, back to 10 in 10s, recover 2m
    soak        30 actors for 4h
    concurrent  100 actors for 2m, consistency sampled on 5% of iterations
    duplicate   20 actors, half of the votes reuse an identifier
    mixed       30 actors, 70% fresh votes / 20% duplicates / 10% result reads

Usage as library::

    from votesim.scenarios.presets import build_scenario_config, run_scenario

    result = await run_scenario("concurrent", base_url="http://localhost:8080")
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from votesim.core.engine import EngineHooks, WorkloadEngine
from votesim.core.models import Mode, Operation, SimulationConfig, SimulationResult, Stage
from votesim.exceptions import ConfigurationError


@dataclass(frozen=True)
class ScenarioPreset:
    name: str
    description: str
    stages: tuple[Stage, ...]
    operation_weights: dict[str, float]
    rate_per_actor_per_sec: float = 10.0
    verify_probability: float = 0.05
    window_minutes: int = 5


def _hold(duration: float, actors: int, name: str) -> tuple[Stage, ...]:
    """Constant load: jump straight to ``actors`` and hold for ``duration``."""
    return (
        Stage(duration_seconds=0, target=actors, name=f"{name}-start"),
        Stage(duration_seconds=duration, target=actors, name=name),
    )


_FRESH_ONLY = {Operation.VOTE_FRESH.value: 1.0}

SCENARIOS: dict[str, ScenarioPreset] = {
    "smoke": ScenarioPreset(
        name="smoke",
        description="Basic functionality with a handful of actors",
        stages=_hold(60, 5, "smoke"),
        operation_weights=_FRESH_ONLY,
        rate_per_actor_per_sec=1.0,
    ),
    "load": ScenarioPreset(
        name="load",
        description="Normal expected load",
        stages=(
            Stage(120, 50, "ramp-up"),
            Stage(300, 50, "steady"),
            Stage(120, 0, "ramp-down"),
        ),
        operation_weights=_FRESH_ONLY,
        window_minutes=10,
    ),
    "stress": ScenarioPreset(
        name="stress",
        description="Push past expected load to find the breaking point",
        stages=(
            Stage(300, 200, "ramp-up"),
            Stage(300, 200, "steady"),
            Stage(120, 300, "peak"),
            Stage(120, 0, "cool-down"),
        ),
        operation_weights=_FRESH_ONLY,
        window_minutes=15,
    ),
    "spike": ScenarioPreset(
        name="spike",
        description="Sudden traffic surge and recovery",
        stages=(
            Stage(120, 10, "baseline"),
            Stage(10, 200, "spike-ramp"),
            Stage(60, 200, "spike"),
            Stage(10, 10, "spike-drop"),
            Stage(120, 10, "recovery"),
        ),
        operation_weights=_FRESH_ONLY,
        window_minutes=6,
    ),
    "soak": ScenarioPreset(
        name="soak",
        description="Endurance run at moderate load",
        stages=_hold(4 * 3600, 30, "soak"),
        operation_weights=_FRESH_ONLY,
        rate_per_actor_per_sec=1.0,
        window_minutes=250,
    ),
    "concurrent": ScenarioPreset(
        name="concurrent",
        description="Many actors voting on one topic to surface race conditions",
        stages=_hold(120, 100, "concurrent"),
        operation_weights=_FRESH_ONLY,
    ),
    "duplicate": ScenarioPreset(
        name="duplicate",
        description="Duplicate-heavy mix to verify exactly-once acceptance",
        stages=_hold(120, 20, "duplicate"),
        operation_weights={Operation.VOTE_FRESH.value: 1.0, Operation.VOTE_DUPLICATE.value: 1.0},
        verify_probability=0.1,
    ),
    "mixed": ScenarioPreset(
        name="mixed",
        description="Realistic production mix of votes and result reads",
        stages=_hold(600, 30, "mixed"),
        operation_weights={
            Operation.VOTE_FRESH.value: 70.0,
            Operation.VOTE_DUPLICATE.value: 20.0,
            Operation.CHECK_RESULTS.value: 10.0,
        },
        rate_per_actor_per_sec=0.2,
        window_minutes=15,
    ),
}


def build_scenario_config(
    name: str,
    *,
    base_url: str | None = None,
    mode: Mode = Mode.LIVE,
    timeout_seconds: float = 30.0,
    api_prefix: str = "/api/v1",
    **overrides,
) -> SimulationConfig:
    """Build a ``SimulationConfig`` from a named preset.

    Any ``SimulationConfig`` field can be overridden by keyword. The voting
    window must stay open for the whole planned run.
    """
    preset = SCENARIOS.get(name)
    if preset is None:
        raise ConfigurationError(
            f"unknown scenario {name!r}",
            details={"known": sorted(SCENARIOS)},
        )

    config = SimulationConfig(
        mode=mode,
        base_url=base_url,
        actors=max(s.target for s in preset.stages),
        duration_seconds=sum(s.duration_seconds for s in preset.stages),
        total_iterations=None,
        rate_per_actor_per_sec=preset.rate_per_actor_per_sec,
        timeout_seconds=timeout_seconds,
        api_prefix=api_prefix,
        stages=preset.stages,
        operation_weights=dict(preset.operation_weights),
        verify_probability=preset.verify_probability,
        window_minutes=preset.window_minutes,
        topic_title=f"{preset.name.upper()} TEST AGENDA",
        topic_description=preset.description,
    )
    if overrides:
        config = replace(config, **overrides)
    if not config.window_covers_run():
        raise ConfigurationError(
            f"scenario {name!r} runs longer than its voting window",
            details={"window_seconds": config.window_seconds, "planned_seconds": config.planned_seconds},
        )
    return config


async def run_scenario(
    name: str,
    *,
    base_url: str | None = None,
    mode: Mode = Mode.LIVE,
    hooks: EngineHooks | None = None,
    **overrides,
) -> SimulationResult:
    """Run a named scenario and return the result."""
    config = build_scenario_config(name, base_url=base_url, mode=mode, **overrides)
    return await WorkloadEngine(config, hooks=hooks).run()

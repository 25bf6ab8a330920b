"""Pre-built simulation scenarios."""

from __future__ import annotations

__all__ = [
    "SCENARIOS",
    "build_scenario_config",
    "run_scenario",
    "run_duplicate_check",
    "run_expiration_check",
]

from votesim.scenarios.checks import run_duplicate_check, run_expiration_check
from votesim.scenarios.presets import SCENARIOS, build_scenario_config, run_scenario

from __future__ import annotations

from typing import Any

from votesim.core.models import SimulationConfig, SimulationResult


def build_simulation_report(config: SimulationConfig, result: SimulationResult) -> dict[str, Any]:
    config_payload = {
        "mode": config.mode.value,
        "base_url": config.base_url,
        "api_prefix": config.api_prefix,
        "actors": config.actors,
        "stages": [
            {"name": s.name, "duration_seconds": s.duration_seconds, "target": s.target}
            for s in config.stages
        ],
        "duration_seconds": config.duration_seconds,
        "total_iterations": config.total_iterations,
        "rate_per_actor_per_sec": config.rate_per_actor_per_sec,
        "operation_weights": dict(config.operation_weights),
        "yes_ratio": config.yes_ratio,
        "verify_probability": config.verify_probability,
        "timeout_seconds": config.timeout_seconds,
        "fast_fail_ms": config.fast_fail_ms,
        "window_minutes": config.window_minutes,
    }
    return {
        "config": config_payload,
        "result": {
            "passed": result.passed,
            "failure_reasons": result.failure_reasons,
            "topic_id": result.topic_id,
            "iteration_count": result.iteration_count,
            "failure_count": result.failure_count,
            "suspected_races": result.suspected_races,
            "outcomes": dict(result.outcome_counts),
            "labels": dict(result.label_counts),
            "duration_seconds": result.duration_seconds,
            "throughput_ips": result.throughput_ips,
        },
        "consistency": result.consistency,
        "metrics": result.metrics_report,
    }

"""Latency and outcome aggregation for a run.

Observations are kept per (operation, stage) series only. Per-operation and
overall figures are rolled up from those series when the report is built;
each retained latency is weighted by the number of observations it stands
for, so a busy stage is not diluted by a quiet one.
"""

from __future__ import annotations

import asyncio
import random
from collections import Counter
from typing import Any, Iterable

from votesim.core.models import SubmissionOutcome
from votesim.logger import Logger, session_logger

DEFAULT_STAGE = "default"


def _weighted_quantile(points: list[tuple[int, float]], q: float) -> float | None:
    """Nearest-rank quantile over (value, weight) pairs sorted by value."""
    if not points:
        return None
    threshold = q * sum(weight for _, weight in points)
    running = 0.0
    for value, weight in points:
        running += weight
        if running >= threshold:
            return float(value)
    return float(points[-1][0])


class LatencySeries:
    """Counters plus a uniformly sampled, bounded set of latencies."""

    def __init__(self, capacity: int, rng: random.Random) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = capacity
        self._rng = rng
        self.count = 0
        self.failures = 0
        self.total_ms = 0
        self.fastest_ms: int | None = None
        self.slowest_ms: int | None = None
        self.outcomes: Counter[str] = Counter()
        self.labels: Counter[str] = Counter()
        self.error_types: Counter[str] = Counter()
        self.retained: list[int] = []

    def add(
        self,
        duration_ms: int,
        *,
        success: bool,
        label: str | None = None,
        outcome: SubmissionOutcome | None = None,
        error_type: str | None = None,
    ) -> None:
        self.count += 1
        self.total_ms += duration_ms
        if not success:
            self.failures += 1
            self.error_types[error_type or "unknown"] += 1
        if label:
            self.labels[label] += 1
        if outcome is not None:
            self.outcomes[outcome.value] += 1
        if self.fastest_ms is None or duration_ms < self.fastest_ms:
            self.fastest_ms = duration_ms
        if self.slowest_ms is None or duration_ms > self.slowest_ms:
            self.slowest_ms = duration_ms

        if len(self.retained) < self.capacity:
            self.retained.append(duration_ms)
            return
        # Replace a retained value with probability capacity / count.
        slot = self._rng.randint(0, self.count - 1)
        if slot < self.capacity:
            self.retained[slot] = duration_ms

    def weighted_latencies(self) -> list[tuple[int, float]]:
        if not self.retained:
            return []
        weight = self.count / len(self.retained)
        return [(value, weight) for value in self.retained]


def summarize(series: Iterable[LatencySeries]) -> dict[str, Any]:
    """Roll one or more series up into a report entry."""
    series = list(series)
    count = sum(s.count for s in series)
    failures = sum(s.failures for s in series)
    outcomes: Counter[str] = Counter()
    labels: Counter[str] = Counter()
    error_types: Counter[str] = Counter()
    for s in series:
        outcomes.update(s.outcomes)
        labels.update(s.labels)
        error_types.update(s.error_types)

    points = sorted(p for s in series for p in s.weighted_latencies())
    return {
        "count": count,
        "error_count": failures,
        "error_rate_pct": round(failures / count * 100, 2) if count else 0.0,
        "error_types": dict(error_types),
        "labels": dict(labels),
        "outcomes": dict(outcomes),
        "min_ms": min((s.fastest_ms for s in series if s.fastest_ms is not None), default=None),
        "max_ms": max((s.slowest_ms for s in series if s.slowest_ms is not None), default=None),
        "mean_ms": (sum(s.total_ms for s in series) / count) if count else None,
        "p50_ms": _weighted_quantile(points, 0.50),
        "p95_ms": _weighted_quantile(points, 0.95),
        "p99_ms": _weighted_quantile(points, 0.99),
        "sample_size": len(points),
    }


class MetricsCollector:
    """Named observations for the run, one series per operation and stage.

    The collector only aggregates; rendering is left to the report layer.
    """

    def __init__(
        self,
        *,
        sample_size: int = 5000,
        seed: int | None = None,
        logger: Logger | None = None,
    ) -> None:
        if sample_size <= 0:
            raise ValueError("sample_size must be > 0")
        self._logger = logger or session_logger
        self._lock = asyncio.Lock()
        self._sample_size = sample_size
        self._rng = random.Random(seed)
        self._series: dict[tuple[str, str], LatencySeries] = {}

    async def record(
        self,
        *,
        operation: str,
        duration_ms: int,
        success: bool,
        stage: str | None = None,
        label: str | None = None,
        outcome: SubmissionOutcome | None = None,
        error_type: str | None = None,
    ) -> None:
        """Record one observation, e.g. a vote submission or a tally read."""
        stage_name = stage or DEFAULT_STAGE
        key = (operation, stage_name)

        async with self._lock:
            series = self._series.get(key)
            if series is None:
                series = self._series[key] = LatencySeries(self._sample_size, self._rng)
            series.add(
                max(0, duration_ms),
                success=success,
                label=label,
                outcome=outcome,
                error_type=error_type,
            )

        if not success and error_type:
            self._logger.debug(
                "sim.metric_error_recorded",
                event="sim.metric_error_recorded",
                operation=operation,
                stage=stage_name,
                error_type=error_type,
            )

    async def build_report(self) -> dict[str, Any]:
        async with self._lock:
            grouped: dict[str, list[LatencySeries]] = {}
            for (operation, _), series in self._series.items():
                grouped.setdefault(operation, []).append(series)
            return {
                "overall": summarize(self._series.values()),
                "by_operation": {op: summarize(members) for op, members in grouped.items()},
                "by_operation_stage": {
                    f"{op}::{stage}": summarize([series]) for (op, stage), series in self._series.items()
                },
            }

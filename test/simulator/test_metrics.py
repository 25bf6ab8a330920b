from __future__ import annotations

import random

import pytest

from votesim.core.metrics import LatencySeries, MetricsCollector, _weighted_quantile
from votesim.core.models import SubmissionOutcome


@pytest.mark.asyncio
async def test_metrics_collector_percentiles_and_grouping():
    collector = MetricsCollector(sample_size=50)

    for d in [10, 20, 30, 40, 50]:
        await collector.record(
            operation="vote_fresh",
            duration_ms=d,
            success=True,
            stage="ramp-up",
            label="accepted",
            outcome=SubmissionOutcome.ACCEPTED,
        )

    await collector.record(
        operation="vote_fresh",
        duration_ms=60,
        success=False,
        stage="ramp-up",
        label="transport_error",
        outcome=SubmissionOutcome.TRANSPORT_ERROR,
        error_type="network_timeout",
    )

    report = await collector.build_report()

    assert report["overall"]["count"] == 6
    assert report["overall"]["error_count"] == 1

    by_op = report["by_operation"]["vote_fresh"]
    assert by_op["count"] == 6
    assert by_op["labels"] == {"accepted": 5, "transport_error": 1}
    assert by_op["outcomes"] == {"Accepted": 5, "TransportError": 1}

    by_op_stage = report["by_operation_stage"]["vote_fresh::ramp-up"]
    assert by_op_stage["count"] == 6
    assert by_op_stage["error_count"] == 1
    # Nearest rank over [10..60]: the third of six values.
    assert by_op_stage["p50_ms"] == 30.0
    assert by_op_stage["p99_ms"] == 60.0
    assert by_op_stage["min_ms"] == 10
    assert by_op_stage["max_ms"] == 60

    overall = report["overall"]
    assert overall["error_rate_pct"] == pytest.approx(16.67, abs=0.01)
    assert overall["error_types"] == {"network_timeout": 1}
    assert overall["mean_ms"] == pytest.approx(35.0)


@pytest.mark.asyncio
async def test_rollup_weights_each_stage_by_its_volume():
    # One retained value per series: the busy stage must dominate the roll-up.
    collector = MetricsCollector(sample_size=1, seed=7)
    for _ in range(3):
        await collector.record(operation="vote_fresh", duration_ms=100, success=True, stage="peak")
    await collector.record(operation="vote_fresh", duration_ms=10, success=True, stage="warmup")

    report = await collector.build_report()

    assert report["by_operation_stage"]["vote_fresh::peak"]["sample_size"] == 1
    assert report["by_operation"]["vote_fresh"]["p50_ms"] == 100.0
    assert report["by_operation"]["vote_fresh"]["min_ms"] == 10
    assert report["overall"]["count"] == 4


@pytest.mark.asyncio
async def test_stage_defaults_and_separate_operations():
    collector = MetricsCollector()
    await collector.record(operation="check_results", duration_ms=5, success=True)
    await collector.record(operation="vote_fresh", duration_ms=7, success=True, stage="steady")

    report = await collector.build_report()

    assert set(report["by_operation"]) == {"check_results", "vote_fresh"}
    assert set(report["by_operation_stage"]) == {"check_results::default", "vote_fresh::steady"}
    assert report["by_operation"]["check_results"]["outcomes"] == {}


@pytest.mark.asyncio
async def test_failure_without_error_type_is_unknown():
    collector = MetricsCollector()
    await collector.record(operation="vote_fresh", duration_ms=-3, success=False)

    report = await collector.build_report()

    assert report["overall"]["error_types"] == {"unknown": 1}
    assert report["overall"]["min_ms"] == 0


@pytest.mark.asyncio
async def test_empty_report():
    report = await MetricsCollector().build_report()
    assert report["overall"]["count"] == 0
    assert report["overall"]["p95_ms"] is None
    assert report["overall"]["min_ms"] is None
    assert report["by_operation"] == {}


def test_weighted_quantile_bounds():
    points = [(1, 1.0), (2, 1.0), (3, 1.0), (4, 1.0)]
    assert _weighted_quantile(points, 0) == 1.0
    assert _weighted_quantile(points, 1) == 4.0
    assert _weighted_quantile([(5, 1.0), (9, 3.0)], 0.5) == 9.0
    assert _weighted_quantile([], 0.5) is None


def test_series_retains_a_bounded_sample():
    series = LatencySeries(10, random.Random(1))
    for i in range(1000):
        series.add(i, success=True)

    assert len(series.retained) == 10
    assert series.count == 1000
    assert series.fastest_ms == 0
    assert series.slowest_ms == 999
    assert all(weight == 100.0 for _, weight in series.weighted_latencies())

    with pytest.raises(ValueError):
        LatencySeries(0, random.Random())
    with pytest.raises(ValueError):
        MetricsCollector(sample_size=0)

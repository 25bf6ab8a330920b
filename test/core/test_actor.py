"""Tests for actor iterations and submission classification."""

from __future__ import annotations

import asyncio
import random
import time

import pytest

from votesim.core.actor import (
    Actor,
    ActorConfig,
    ActorContext,
    IterationBudget,
    RunCounters,
    classify_submission,
)
from votesim.core.identifier import IdentifierCodec, UniqueIdentifierSource
from votesim.core.ledger import SubmissionLedger
from votesim.core.metrics import MetricsCollector
from votesim.core.mix import OperationMix
from votesim.core.models import (
    Operation,
    SubmissionOutcome,
    SubmissionResult,
    Tally,
    Topic,
    VoteChoice,
)
from votesim.core.verifier import ConsistencyVerifier

_TOPIC = Topic(id="1", title="t", description="d", created_at=0.0)


class FakeClient:
    def __init__(self, outcome: SubmissionOutcome = SubmissionOutcome.ACCEPTED, *, raises: Exception | None = None):
        self.outcome = outcome
        self.raises = raises
        self.votes: list[tuple[str, str, VoteChoice]] = []

    async def submit_vote(self, topic_id: str, identifier: str, choice: VoteChoice) -> SubmissionResult:
        self.votes.append((topic_id, identifier, choice))
        if self.raises is not None:
            raise self.raises
        return SubmissionResult(outcome=self.outcome, status_code=201, duration_ms=1)

    async def get_tally(self, topic_id: str) -> Tally:
        return Tally(yes_count=0, no_count=0)


class FakeTopics:
    def __init__(self, topic: Topic | None = _TOPIC, *, closed: bool = False) -> None:
        self.topic = topic
        self.closed = closed

    async def acquire(self) -> Topic | None:
        return self.topic


def _context(client, *, ledger=None, topics=None, operation=Operation.VOTE_FRESH, active=1) -> ActorContext:
    ledger = ledger or SubmissionLedger()
    return ActorContext(
        client=client,
        ledger=ledger,
        verifier=ConsistencyVerifier(client, ledger),
        topics=topics or FakeTopics(),
        mix=OperationMix(weights={operation: 1.0}),
        identifiers=UniqueIdentifierSource(run_start_ms=1_000, actor_slots=4),
        metrics=MetricsCollector(),
        counters=RunCounters(),
        active_target=lambda: active,
        stage_name=lambda: "steady",
    )


def _actor(context: ActorContext, *, actor_id: int = 0, rate: float = 1000.0, verify: float = 0.0) -> Actor:
    return Actor(
        ActorConfig(actor_id=actor_id, rate_per_sec=rate, verify_probability=verify, seed=1),
        context,
    )


class TestClassifySubmission:
    @pytest.mark.parametrize(
        "outcome,legitimate,expected",
        [
            (SubmissionOutcome.ACCEPTED, False, (True, "accepted")),
            (SubmissionOutcome.REJECTED_DUPLICATE, True, (True, "duplicate_rejected")),
            (SubmissionOutcome.REJECTED_DUPLICATE, False, (False, "suspected_race")),
            (SubmissionOutcome.RATE_LIMITED, False, (True, "rate_limited")),
            (SubmissionOutcome.CIRCUIT_OPEN, False, (True, "circuit_open")),
            (SubmissionOutcome.REJECTED_OTHER, False, (False, "rejected_other")),
            (SubmissionOutcome.TRANSPORT_ERROR, False, (False, "transport_error")),
        ],
    )
    def test_mapping(self, outcome, legitimate, expected):
        assert classify_submission(outcome, legitimate_duplicate=legitimate) == expected

    def test_expected_rejection(self):
        assert classify_submission(
            SubmissionOutcome.REJECTED_OTHER, legitimate_duplicate=False, expect_rejection=True
        ) == (True, "invalid_rejected")
        assert classify_submission(
            SubmissionOutcome.ACCEPTED, legitimate_duplicate=False, expect_rejection=True
        ) == (False, "invalid_accepted")
        assert classify_submission(
            SubmissionOutcome.TRANSPORT_ERROR, legitimate_duplicate=False, expect_rejection=True
        ) == (False, "transport_error")

    def test_closed_window_is_not_an_invalid_rejection(self):
        assert classify_submission(
            SubmissionOutcome.REJECTED_OTHER,
            legitimate_duplicate=False,
            expect_rejection=True,
            reason="session_expired",
        ) == (False, "session_expired")
        assert classify_submission(
            SubmissionOutcome.REJECTED_OTHER, legitimate_duplicate=False, reason="session_expired"
        ) == (False, "session_expired")
        assert classify_submission(
            SubmissionOutcome.REJECTED_OTHER, legitimate_duplicate=False, expect_rejection=True, reason="client_error"
        ) == (True, "invalid_rejected")


class TestIterate:
    @pytest.mark.asyncio
    async def test_fresh_vote_accepted(self):
        client = FakeClient()
        ctx = _context(client)
        record = await _actor(ctx).iterate()

        assert record.success is True
        assert record.label == "accepted"
        assert IdentifierCodec.is_valid(record.identifier)
        assert ctx.ledger.accepted_count() == 1
        assert ctx.counters.outcomes == {"Accepted": 1}

    @pytest.mark.asyncio
    async def test_duplicate_rejection_on_first_attempt_is_suspected_race(self):
        ctx = _context(FakeClient(SubmissionOutcome.REJECTED_DUPLICATE))
        record = await _actor(ctx).iterate()

        assert record.success is False
        assert record.label == "suspected_race"
        assert ctx.counters.suspected_races == 1

    @pytest.mark.asyncio
    async def test_duplicate_rejection_on_second_attempt_is_success(self):
        ledger = SubmissionLedger()
        ledger.finalize(ledger.record("52998224725", 3, VoteChoice.YES), SubmissionOutcome.ACCEPTED)
        client = FakeClient(SubmissionOutcome.REJECTED_DUPLICATE)
        ctx = _context(client, ledger=ledger, operation=Operation.VOTE_DUPLICATE)

        record = await _actor(ctx).iterate()

        assert client.votes[0][1] == "52998224725"
        assert record.success is True
        assert record.label == "duplicate_rejected"
        assert ledger.attempts_for("52998224725")[1].sequence == 2

    @pytest.mark.asyncio
    async def test_duplicate_without_history_uses_fresh_identifier(self):
        client = FakeClient()
        ctx = _context(client, operation=Operation.VOTE_DUPLICATE)
        record = await _actor(ctx).iterate()

        assert record.label == "accepted"
        assert IdentifierCodec.is_valid(client.votes[0][1])

    @pytest.mark.asyncio
    async def test_invalid_vote_rejected_is_success(self):
        client = FakeClient(SubmissionOutcome.REJECTED_OTHER)
        ctx = _context(client, operation=Operation.VOTE_INVALID)
        record = await _actor(ctx).iterate()

        assert not IdentifierCodec.is_valid(client.votes[0][1])
        assert record.success is True
        assert record.label == "invalid_rejected"

    @pytest.mark.asyncio
    async def test_invalid_vote_accepted_is_failure(self):
        ctx = _context(FakeClient(SubmissionOutcome.ACCEPTED), operation=Operation.VOTE_INVALID)
        record = await _actor(ctx).iterate()

        assert record.success is False
        assert record.label == "invalid_accepted"

    @pytest.mark.asyncio
    async def test_check_results(self):
        client = FakeClient()
        ctx = _context(client, operation=Operation.CHECK_RESULTS)
        record = await _actor(ctx).iterate()

        assert record.label == "results_read"
        assert client.votes == []
        report = await ctx.metrics.build_report()
        assert report["by_operation"]["check_results"]["count"] == 1

    @pytest.mark.asyncio
    async def test_missing_topic_fails_iteration(self):
        client = FakeClient()
        ctx = _context(client, topics=FakeTopics(None))
        record = await _actor(ctx).iterate()

        assert record.success is False
        assert record.label == "topic_unavailable"
        assert client.votes == []
        assert len(ctx.ledger) == 0

    @pytest.mark.asyncio
    async def test_closed_topic_fails_without_submitting(self):
        client = FakeClient()
        ctx = _context(client, topics=FakeTopics(None, closed=True))
        record = await _actor(ctx).iterate()

        assert record.success is False
        assert record.label == "topic_closed"
        assert client.votes == []
        assert len(ctx.ledger) == 0
        assert ctx.counters.labels == {"topic_closed": 1}

    @pytest.mark.asyncio
    async def test_outcome_reaches_metrics(self):
        ctx = _context(FakeClient(SubmissionOutcome.RATE_LIMITED))
        await _actor(ctx).iterate()

        report = await ctx.metrics.build_report()
        assert report["by_operation"]["vote_fresh"]["outcomes"] == {"RateLimited": 1}

    @pytest.mark.asyncio
    async def test_client_exception_finalizes_attempt(self):
        ctx = _context(FakeClient(raises=RuntimeError("boom")))
        with pytest.raises(RuntimeError):
            await _actor(ctx).iterate()

        snap = ctx.ledger.snapshot()
        assert snap.pending == 0
        assert snap.outcome_counts == {"TransportError": 1}

    @pytest.mark.asyncio
    async def test_verification_sampled(self):
        ctx = _context(FakeClient())
        await _actor(ctx, verify=1.0).iterate()
        assert len(ctx.verifier.samples) == 1


class TestRun:
    @pytest.mark.asyncio
    async def test_budget_stops_actor(self):
        ctx = _context(FakeClient())
        stop = asyncio.Event()
        budget = IterationBudget(5)
        await asyncio.wait_for(_actor(ctx).run(stop_event=stop, budget=budget), timeout=5)

        assert budget.is_exhausted()
        assert ctx.counters.snapshot() == (5, 0)

    @pytest.mark.asyncio
    async def test_idle_actor_exits_when_budget_is_spent(self):
        ctx = _context(FakeClient(), active=0)
        budget = IterationBudget(0)
        await asyncio.wait_for(_actor(ctx).run(stop_event=asyncio.Event(), budget=budget), timeout=5)

        assert ctx.counters.snapshot() == (0, 0)

    @pytest.mark.asyncio
    async def test_external_stop_drops_paced_iteration(self):
        ctx = _context(FakeClient())
        stop = asyncio.Event()
        task = asyncio.create_task(_actor(ctx, rate=2.0).run(stop_event=stop, budget=IterationBudget(None)))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        # The first iteration fires immediately; the second was still pacing.
        assert ctx.counters.snapshot() == (1, 0)

    @pytest.mark.asyncio
    async def test_inactive_actor_idles(self):
        ctx = _context(FakeClient(), active=0)
        stop = asyncio.Event()
        task = asyncio.create_task(_actor(ctx).run(stop_event=stop, budget=IterationBudget(None)))
        await asyncio.sleep(0.2)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert ctx.counters.snapshot() == (0, 0)

    @pytest.mark.asyncio
    async def test_pacing_limits_rate(self):
        ctx = _context(FakeClient())
        stop = asyncio.Event()
        start = time.monotonic()
        await _actor(ctx, rate=20.0).run(stop_event=stop, budget=IterationBudget(5))

        # Five iterations at 20/s need at least four intervals of 50ms.
        assert time.monotonic() - start >= 0.18

    @pytest.mark.asyncio
    async def test_crashing_iteration_is_counted_and_loop_continues(self):
        ctx = _context(FakeClient(raises=RuntimeError("boom")))
        stop = asyncio.Event()
        await asyncio.wait_for(_actor(ctx).run(stop_event=stop, budget=IterationBudget(3)), timeout=5)

        assert ctx.counters.labels == {"actor_error": 3}
        assert ctx.ledger.pending_count() == 0


class TestIterationBudget:
    @pytest.mark.asyncio
    async def test_unlimited(self):
        budget = IterationBudget(None)
        assert not budget.is_limited()
        assert all([await budget.try_acquire() for _ in range(100)])

    @pytest.mark.asyncio
    async def test_exhaustion(self):
        budget = IterationBudget(2)
        assert await budget.try_acquire()
        assert await budget.try_acquire()
        assert not await budget.try_acquire()
        assert budget.remaining() == 0


def test_seeded_actors_draw_reproducibly():
    mix = OperationMix(weights={Operation.VOTE_FRESH: 1.0, Operation.CHECK_RESULTS: 1.0})
    first = random.Random(5)
    second = random.Random(5)
    assert [mix.choose_operation(first) for _ in range(20)] == [mix.choose_operation(second) for _ in range(20)]

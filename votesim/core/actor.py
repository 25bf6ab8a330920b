from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol

from votesim.core.identifier import IdentifierCodec, UniqueIdentifierSource
from votesim.core.ledger import SubmissionLedger
from votesim.core.metrics import MetricsCollector
from votesim.core.mix import OperationMix
from votesim.core.models import Operation, SubmissionOutcome, SubmissionResult, Tally, Topic, VoteChoice
from votesim.core.verifier import ConsistencyVerifier
from votesim.exceptions import TargetError, ValidationError
from votesim.logger import Logger, session_logger

if TYPE_CHECKING:
    from votesim.core.engine import TopicProvider

_IDLE_POLL_SECONDS = 0.05


class VotingClient(Protocol):
    async def submit_vote(self, topic_id: str, identifier: str, choice: VoteChoice) -> SubmissionResult: ...

    async def get_tally(self, topic_id: str) -> Tally: ...


@dataclass(frozen=True)
class ActorConfig:
    actor_id: int
    rate_per_sec: float
    verify_probability: float = 0.05
    seed: int | None = None


@dataclass(frozen=True)
class ActorContext:
    """Everything an actor shares with the rest of the run."""

    client: VotingClient
    ledger: SubmissionLedger
    verifier: ConsistencyVerifier
    topics: "TopicProvider"
    mix: OperationMix
    identifiers: UniqueIdentifierSource
    metrics: MetricsCollector
    counters: "RunCounters"
    active_target: Callable[[], int]
    stage_name: Callable[[], str]
    on_iterate: Callable[["IterationRecord"], Awaitable[None]] | None = None


@dataclass(frozen=True)
class IterationRecord:
    actor_id: int
    iteration: int
    operation: Operation | None
    stage: str
    success: bool
    label: str
    duration_ms: int
    identifier: str | None = None
    outcome: SubmissionOutcome | None = None


def classify_submission(
    outcome: SubmissionOutcome,
    *,
    legitimate_duplicate: bool,
    expect_rejection: bool = False,
    reason: str | None = None,
) -> tuple[bool, str]:
    """Map a submission outcome to (success, label) for the run's metrics.

    A duplicate rejection on what the ledger holds as the identifier's first
    attempt is a suspected race: the target rejected something never sent before.
    A closed voting window is its own failure, never credited as an invalid
    identifier rejection.
    """
    if outcome == SubmissionOutcome.REJECTED_OTHER and reason == "session_expired":
        return False, "session_expired"
    if expect_rejection:
        if outcome == SubmissionOutcome.REJECTED_OTHER:
            return True, "invalid_rejected"
        if outcome == SubmissionOutcome.ACCEPTED:
            return False, "invalid_accepted"

    if outcome == SubmissionOutcome.ACCEPTED:
        return True, "accepted"
    if outcome == SubmissionOutcome.REJECTED_DUPLICATE:
        if legitimate_duplicate:
            return True, "duplicate_rejected"
        return False, "suspected_race"
    if outcome == SubmissionOutcome.RATE_LIMITED:
        return True, "rate_limited"
    if outcome == SubmissionOutcome.CIRCUIT_OPEN:
        return True, "circuit_open"
    if outcome == SubmissionOutcome.REJECTED_OTHER:
        return False, "rejected_other"
    return False, "transport_error"


class Actor:
    """One logical voter loop.

    Each iteration acquires the shared topic, picks an operation from the mix,
    submits through the client, records the attempt in the ledger and
    occasionally samples consistency. Actors whose id is at or above the
    schedule's current target sit idle.
    """

    def __init__(
        self,
        config: ActorConfig,
        context: ActorContext,
        *,
        logger: Logger | None = None,
    ) -> None:
        if config.rate_per_sec <= 0:
            raise ValidationError("rate_per_sec must be > 0")
        if not 0.0 <= config.verify_probability <= 1.0:
            raise ValidationError("verify_probability must be within [0, 1]")

        self._config = config
        self._ctx = context
        self._logger = logger or session_logger
        seed = None if config.seed is None else config.seed + config.actor_id
        self._rng = random.Random(seed)
        self._codec = IdentifierCodec(self._rng)
        self._iteration = 0

    @property
    def actor_id(self) -> int:
        return self._config.actor_id

    async def run(self, *, stop_event: asyncio.Event, budget: "IterationBudget") -> None:
        interval = 1.0 / self._config.rate_per_sec
        next_fire = time.monotonic()

        while not stop_event.is_set():
            if budget.is_exhausted():
                break

            if self._config.actor_id >= self._ctx.active_target():
                await asyncio.sleep(_IDLE_POLL_SECONDS)
                next_fire = time.monotonic()
                continue

            if not await budget.try_acquire():
                break

            now = time.monotonic()
            if now < next_fire:
                await asyncio.sleep(next_fire - now)
            next_fire = max(next_fire + interval, time.monotonic())

            # An acquired iteration still runs when only the budget ran out;
            # an external stop (duration or signal) drops it.
            if stop_event.is_set():
                break

            try:
                record = await self.iterate()
            except Exception as exc:
                await self._ctx.counters.record(success=False, label="actor_error")
                self._logger.error(
                    "sim.actor_iteration_crashed",
                    event="sim.actor_iteration_crashed",
                    actor_id=self._config.actor_id,
                    iteration=self._iteration,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue

            if self._ctx.on_iterate is not None:
                await self._ctx.on_iterate(record)

    async def iterate(self) -> IterationRecord:
        iteration = self._iteration
        self._iteration += 1
        stage = self._ctx.stage_name()
        start = time.monotonic()

        topic = await self._ctx.topics.acquire()
        if topic is None:
            closed = self._ctx.topics.closed
            record = IterationRecord(
                actor_id=self._config.actor_id,
                iteration=iteration,
                operation=None,
                stage=stage,
                success=False,
                label="topic_closed" if closed else "topic_unavailable",
                duration_ms=_elapsed_ms(start),
            )
            await self._ctx.counters.record(success=False, label=record.label)
            if not closed:
                self._logger.warning(
                    "sim.actor_topic_unavailable",
                    event="sim.actor_topic_unavailable",
                    actor_id=self._config.actor_id,
                    iteration=iteration,
                )
            return record

        operation = self._ctx.mix.choose_operation(self._rng)
        if operation == Operation.CHECK_RESULTS:
            record = await self._check_results(topic, iteration, stage)
        else:
            record = await self._vote(topic, operation, iteration, stage)

        await self._ctx.counters.record(
            success=record.success,
            label=record.label,
            outcome=record.outcome,
        )

        if self._rng.random() < self._config.verify_probability:
            await self._ctx.verifier.sample(topic.id)

        return record

    def _pick_identifier(self, operation: Operation, iteration: int) -> str:
        if operation == Operation.VOTE_INVALID:
            return self._codec.generate_invalid()
        if operation == Operation.VOTE_DUPLICATE:
            previous = self._ctx.ledger.sample_identifier(self._rng)
            if previous is not None:
                return previous
        return self._ctx.identifiers.next_for(self._config.actor_id, iteration)

    async def _vote(self, topic: Topic, operation: Operation, iteration: int, stage: str) -> IterationRecord:
        identifier = self._pick_identifier(operation, iteration)
        choice = self._ctx.mix.choose_choice(self._rng)
        ledger = self._ctx.ledger

        handle = ledger.record(identifier, self._config.actor_id, choice)
        legitimate_duplicate = ledger.is_legitimate_duplicate(identifier, before=handle)
        try:
            result = await self._ctx.client.submit_vote(topic.id, identifier, choice)
        except BaseException:
            ledger.finalize(handle, SubmissionOutcome.TRANSPORT_ERROR)
            raise
        ledger.finalize(handle, result.outcome)

        success, label = classify_submission(
            result.outcome,
            legitimate_duplicate=legitimate_duplicate,
            expect_rejection=operation == Operation.VOTE_INVALID,
            reason=result.reason,
        )

        await self._ctx.metrics.record(
            operation=operation.value,
            duration_ms=result.duration_ms,
            success=success,
            stage=stage,
            label=label,
            outcome=result.outcome,
            error_type=None if success else (result.reason or label),
        )

        if label == "suspected_race":
            self._logger.error(
                "sim.suspected_race",
                event="sim.suspected_race",
                actor_id=self._config.actor_id,
                topic_id=topic.id,
                identifier=identifier,
                sequence=handle.sequence,
                status_code=result.status_code,
                error=result.error,
            )
        elif not success:
            self._logger.warning(
                "sim.vote_failed",
                event="sim.vote_failed",
                actor_id=self._config.actor_id,
                topic_id=topic.id,
                identifier=identifier,
                label=label,
                outcome=result.outcome.value,
                status_code=result.status_code,
                reason=result.reason,
                error=result.error,
            )

        return IterationRecord(
            actor_id=self._config.actor_id,
            iteration=iteration,
            operation=operation,
            stage=stage,
            success=success,
            label=label,
            duration_ms=result.duration_ms,
            identifier=identifier,
            outcome=result.outcome,
        )

    async def _check_results(self, topic: Topic, iteration: int, stage: str) -> IterationRecord:
        start = time.monotonic()
        success = True
        error_type = None
        try:
            await self._ctx.client.get_tally(topic.id)
        except TargetError as exc:
            success = False
            error_type = exc.details.get("error_type") or "tally_failed"
            self._logger.warning(
                "sim.check_results_failed",
                event="sim.check_results_failed",
                actor_id=self._config.actor_id,
                topic_id=topic.id,
                status_code=exc.status_code,
                error=str(exc),
            )
        duration_ms = _elapsed_ms(start)
        label = "results_read" if success else "results_failed"

        await self._ctx.metrics.record(
            operation=Operation.CHECK_RESULTS.value,
            duration_ms=duration_ms,
            success=success,
            stage=stage,
            label=label,
            error_type=error_type,
        )
        return IterationRecord(
            actor_id=self._config.actor_id,
            iteration=iteration,
            operation=Operation.CHECK_RESULTS,
            stage=stage,
            success=success,
            label=label,
            duration_ms=duration_ms,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class IterationBudget:
    """Shared iteration budget across all actors."""

    def __init__(self, total_iterations: int | None) -> None:
        self._remaining = total_iterations
        self._lock = asyncio.Lock()

    def is_limited(self) -> bool:
        return self._remaining is not None

    def remaining(self) -> int | None:
        return self._remaining

    def is_exhausted(self) -> bool:
        return self._remaining is not None and self._remaining <= 0

    async def try_acquire(self) -> bool:
        """Return True if one iteration is acquired, False if the budget is exhausted."""
        if self._remaining is None:
            return True

        async with self._lock:
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True


class RunCounters:
    """Iteration-level success/failure tallies for the final result."""

    def __init__(self) -> None:
        self.ok = 0
        self.error = 0
        self.labels: dict[str, int] = {}
        self.outcomes: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def snapshot(self) -> tuple[int, int]:
        return self.ok, self.error

    @property
    def suspected_races(self) -> int:
        return self.labels.get("suspected_race", 0)

    async def record(
        self,
        *,
        success: bool,
        label: str,
        outcome: SubmissionOutcome | None = None,
    ) -> None:
        async with self._lock:
            if success:
                self.ok += 1
            else:
                self.error += 1
            self.labels[label] = self.labels.get(label, 0) + 1
            if outcome is not None:
                self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

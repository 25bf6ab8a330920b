from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Mode(str, Enum):
    """Where the run sends its traffic.

    live: the target at ``base_url``
    fixture: an in-process fake voting API (CI-safe)
    """

    LIVE = "live"
    FIXTURE = "fixture"


class VoteChoice(str, Enum):
    YES = "Yes"
    NO = "No"


class SubmissionOutcome(str, Enum):
    """Classified result of a single vote submission."""

    ACCEPTED = "Accepted"
    REJECTED_DUPLICATE = "RejectedDuplicate"
    REJECTED_OTHER = "RejectedOther"
    RATE_LIMITED = "RateLimited"
    CIRCUIT_OPEN = "CircuitOpen"
    TRANSPORT_ERROR = "TransportError"

    @property
    def is_expected(self) -> bool:
        """True for outcomes that are not failures of the workload."""
        return self in (
            SubmissionOutcome.ACCEPTED,
            SubmissionOutcome.REJECTED_DUPLICATE,
            SubmissionOutcome.RATE_LIMITED,
            SubmissionOutcome.CIRCUIT_OPEN,
        )


class Verdict(str, Enum):
    CONSISTENT = "Consistent"
    LAGGING = "Lagging"
    INCONSISTENT = "Inconsistent"


class Operation(str, Enum):
    """Operation types an actor can pick for one iteration."""

    VOTE_FRESH = "vote_fresh"
    VOTE_DUPLICATE = "vote_duplicate"
    VOTE_INVALID = "vote_invalid"
    CHECK_RESULTS = "check_results"


@dataclass(frozen=True)
class Topic:
    """The agenda every actor votes on.

    Immutable once opened; ``is_open`` is derived from the window bounds so the
    open -> closed transition is one-way.
    """

    id: str
    title: str
    description: str
    created_at: float
    window_minutes: int | None = None
    opened_at: float | None = None
    window_seconds: float | None = None

    def is_open(self, now: float) -> bool:
        if self.opened_at is None or self.window_seconds is None:
            return False
        return now < self.opened_at + self.window_seconds


@dataclass(frozen=True)
class Tally:
    yes_count: int
    no_count: int

    @property
    def total(self) -> int:
        return self.yes_count + self.no_count


@dataclass(frozen=True)
class SubmissionResult:
    outcome: SubmissionOutcome
    status_code: int | None
    duration_ms: int
    reason: str | None = None
    error: str | None = None


@dataclass
class SubmissionAttempt:
    identifier: str
    choice: VoteChoice
    actor_id: int
    sequence: int
    timestamp: float
    outcome: SubmissionOutcome | None = None


@dataclass(frozen=True)
class ConsistencySample:
    timestamp: float
    local_accepted: int
    target_count: int
    verdict: Verdict
    in_flight: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "local_accepted": self.local_accepted,
            "target_count": self.target_count,
            "in_flight": self.in_flight,
            "verdict": self.verdict.value,
        }


@dataclass(frozen=True)
class Stage:
    """One segment of a ramping schedule: move to ``target`` actors over ``duration_seconds``."""

    duration_seconds: float
    target: int
    name: str | None = None


@dataclass(frozen=True)
class SimulationConfig:
    mode: Mode
    base_url: str | None
    actors: int
    duration_seconds: float | None
    total_iterations: int | None
    rate_per_actor_per_sec: float
    timeout_seconds: float
    api_prefix: str = "/api/v1"
    stages: tuple[Stage, ...] = ()
    operation_weights: dict[str, float] = field(
        default_factory=lambda: {Operation.VOTE_FRESH.value: 1.0}
    )
    yes_ratio: float = 0.6
    verify_probability: float = 0.05
    fast_fail_ms: float = 10.0
    sample_retention: int = 20
    window_minutes: int = 5
    fixture_seconds_per_minute: float = 60.0
    topic_title: str = "Load Test Agenda"
    topic_description: str = "Agenda created by votesim for concurrency verification"
    seed: int | None = None

    @property
    def planned_seconds(self) -> float | None:
        """Run length fixed by the stages or duration; None for budget-only runs."""
        if self.stages:
            return sum(s.duration_seconds for s in self.stages)
        return self.duration_seconds

    @property
    def minute_seconds(self) -> float:
        """Wall-clock length of one voting-window minute."""
        return self.fixture_seconds_per_minute if self.mode == Mode.FIXTURE else 60.0

    @property
    def window_seconds(self) -> float:
        return self.window_minutes * self.minute_seconds

    def window_covers_run(self) -> bool:
        planned = self.planned_seconds
        return planned is None or self.window_seconds >= planned


@dataclass
class SimulationResult:
    started_at_monotonic: float
    ended_at_monotonic: float
    iteration_count: int
    failure_count: int
    suspected_races: int = 0
    outcome_counts: dict[str, int] = field(default_factory=dict)
    label_counts: dict[str, int] = field(default_factory=dict)
    topic_id: str | None = None
    consistency: dict[str, Any] | None = None
    final_sample: ConsistencySample | None = None
    metrics_report: dict[str, Any] | None = None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.ended_at_monotonic - self.started_at_monotonic)

    @property
    def throughput_ips(self) -> float:
        duration = self.duration_seconds
        return (self.iteration_count / duration) if duration > 0 else 0.0

    @property
    def failure_reasons(self) -> list[str]:
        """Why the run did not pass; empty when it did.

        A run without a post-drain sample has no authoritative verdict, so it
        cannot pass.
        """
        reasons: list[str] = []
        if self.suspected_races:
            reasons.append("suspected_race")
        if self.final_sample is None:
            reasons.append("final_sample_missing")
        elif self.final_sample.verdict == Verdict.INCONSISTENT:
            reasons.append("final_inconsistent")
        if self.consistency and self.consistency.get("inconsistent", 0):
            reasons.append("inconsistent_samples")
        return reasons

    @property
    def passed(self) -> bool:
        return not self.failure_reasons

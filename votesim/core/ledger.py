"""Append-only record of every submission attempt made during a run.

The ledger is the generator's ground truth for "what was accepted", so every
read and write happens under one lock. Actors call it from asyncio tasks, and
the lock also keeps it correct when it is driven from worker threads.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from threading import Lock

from votesim.core.models import SubmissionAttempt, SubmissionOutcome, VoteChoice
from votesim.exceptions import LedgerError


@dataclass(frozen=True)
class AttemptHandle:
    """Opaque reference to one recorded attempt."""

    index: int
    identifier: str
    sequence: int


@dataclass(frozen=True)
class LedgerSnapshot:
    attempts: int
    accepted: int
    pending: int
    unique_identifiers: int
    accepted_yes: int
    accepted_no: int
    outcome_counts: dict[str, int] = field(default_factory=dict)


class SubmissionLedger:
    def __init__(self) -> None:
        self._lock = Lock()
        self._attempts: list[SubmissionAttempt] = []
        self._by_identifier: dict[str, list[int]] = {}
        self._outcome_counts: dict[SubmissionOutcome, int] = {}
        self._accepted_by_choice: dict[VoteChoice, int] = {VoteChoice.YES: 0, VoteChoice.NO: 0}
        self._accepted_identifiers: list[str] = []
        self._accepted = 0
        self._pending = 0

    def record(self, identifier: str, actor_id: int, choice: VoteChoice) -> AttemptHandle:
        """Append a new attempt; its sequence is 1 + prior attempts for ``identifier``."""
        with self._lock:
            history = self._by_identifier.setdefault(identifier, [])
            sequence = len(history) + 1
            index = len(self._attempts)
            self._attempts.append(
                SubmissionAttempt(
                    identifier=identifier,
                    choice=choice,
                    actor_id=actor_id,
                    sequence=sequence,
                    timestamp=time.time(),
                )
            )
            history.append(index)
            self._pending += 1
        return AttemptHandle(index=index, identifier=identifier, sequence=sequence)

    def finalize(self, handle: AttemptHandle, outcome: SubmissionOutcome) -> None:
        """Set the outcome of an attempt. A second call for the same handle is an error."""
        with self._lock:
            if not 0 <= handle.index < len(self._attempts):
                raise LedgerError("unknown attempt handle", details={"index": handle.index})

            attempt = self._attempts[handle.index]
            if attempt.identifier != handle.identifier:
                raise LedgerError(
                    "attempt handle does not match ledger entry",
                    details={"index": handle.index, "identifier": handle.identifier},
                )
            if attempt.outcome is not None:
                raise LedgerError(
                    "attempt already finalized",
                    details={
                        "identifier": attempt.identifier,
                        "sequence": attempt.sequence,
                        "outcome": attempt.outcome.value,
                        "attempted_outcome": outcome.value,
                    },
                )

            attempt.outcome = outcome
            self._pending -= 1
            self._outcome_counts[outcome] = self._outcome_counts.get(outcome, 0) + 1
            if outcome == SubmissionOutcome.ACCEPTED:
                self._accepted += 1
                self._accepted_by_choice[attempt.choice] += 1
                self._accepted_identifiers.append(attempt.identifier)

    def accepted_count(self) -> int:
        with self._lock:
            return self._accepted

    def pending_count(self) -> int:
        with self._lock:
            return self._pending

    def is_legitimate_duplicate(self, identifier: str, *, before: AttemptHandle | None = None) -> bool:
        """True iff ``identifier`` already has an attempt recorded.

        With ``before``, only attempts recorded ahead of that handle count, which
        answers the question as of the moment the handle was recorded.
        """
        with self._lock:
            history = self._by_identifier.get(identifier)
            if not history:
                return False
            if before is None:
                return True
            return any(index < before.index for index in history)

    def attempts_for(self, identifier: str) -> list[SubmissionAttempt]:
        with self._lock:
            return [
                SubmissionAttempt(
                    identifier=a.identifier,
                    choice=a.choice,
                    actor_id=a.actor_id,
                    sequence=a.sequence,
                    timestamp=a.timestamp,
                    outcome=a.outcome,
                )
                for a in (self._attempts[i] for i in self._by_identifier.get(identifier, []))
            ]

    def sample_identifier(self, rng: random.Random) -> str | None:
        """Pick an identifier that already has an accepted attempt, or None.

        Only settled identifiers are handed out, so a resubmission can never
        reach the target ahead of the identifier's first attempt.
        """
        with self._lock:
            if not self._accepted_identifiers:
                return None
            return self._accepted_identifiers[rng.randrange(len(self._accepted_identifiers))]

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            return LedgerSnapshot(
                attempts=len(self._attempts),
                accepted=self._accepted,
                pending=self._pending,
                unique_identifiers=len(self._by_identifier),
                accepted_yes=self._accepted_by_choice[VoteChoice.YES],
                accepted_no=self._accepted_by_choice[VoteChoice.NO],
                outcome_counts={o.value: c for o, c in self._outcome_counts.items()},
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)

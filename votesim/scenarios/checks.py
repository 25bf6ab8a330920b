"""Deterministic end-to-end checks against a voting target.

Unlike the load presets these run a fixed sequence of calls and report what
the target answered at each step.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from votesim.core.actor import classify_submission
from votesim.core.identifier import IdentifierCodec
from votesim.core.ledger import SubmissionLedger
from votesim.core.models import SubmissionOutcome, SubmissionResult, Tally, VoteChoice
from votesim.core.target_client import TargetClient
from votesim.logger import Logger, session_logger


@dataclass(frozen=True)
class DuplicateCheckResult:
    topic_id: str
    identifier: str
    first: SubmissionResult
    second: SubmissionResult
    second_label: str
    tally: Tally

    @property
    def passed(self) -> bool:
        return (
            self.first.outcome == SubmissionOutcome.ACCEPTED
            and self.second.outcome == SubmissionOutcome.REJECTED_DUPLICATE
            and self.second_label == "duplicate_rejected"
            and self.tally == Tally(yes_count=1, no_count=0)
        )


@dataclass(frozen=True)
class ExpirationCheckResult:
    topic_id: str
    identifier: str
    attempts: tuple[SubmissionResult, ...]

    @property
    def passed(self) -> bool:
        return bool(self.attempts) and all(
            a.outcome == SubmissionOutcome.REJECTED_OTHER and a.reason == "session_expired"
            for a in self.attempts
        )


async def _open_topic(client: TargetClient, title: str, description: str, minutes: int) -> str:
    topic_id = await client.create_topic(title, description)
    if not await client.open_window(topic_id, minutes):
        raise RuntimeError(f"failed to open voting window for topic {topic_id}")
    return topic_id


async def run_duplicate_check(
    client: TargetClient,
    *,
    codec: IdentifierCodec | None = None,
    window_minutes: int = 5,
    logger: Logger | None = None,
) -> DuplicateCheckResult:
    """Vote Yes with identifier A, vote No with A again, then read the tally.

    Expected: Accepted, then RejectedDuplicate classified as a legitimate
    duplicate (not a suspected race), and a tally of 1 Yes / 0 No.
    """
    log = logger or session_logger
    codec = codec or IdentifierCodec()
    ledger = SubmissionLedger()

    topic_id = await _open_topic(client, "DUPLICATE VOTE CHECK", "Duplicate vote rejection check", window_minutes)
    identifier = codec.generate_valid()

    results: list[tuple[SubmissionResult, str]] = []
    for choice in (VoteChoice.YES, VoteChoice.NO):
        handle = ledger.record(identifier, 0, choice)
        legitimate = ledger.is_legitimate_duplicate(identifier, before=handle)
        result = await client.submit_vote(topic_id, identifier, choice)
        ledger.finalize(handle, result.outcome)
        _, label = classify_submission(result.outcome, legitimate_duplicate=legitimate)
        results.append((result, label))

    tally = await client.get_tally(topic_id)
    check = DuplicateCheckResult(
        topic_id=topic_id,
        identifier=identifier,
        first=results[0][0],
        second=results[1][0],
        second_label=results[1][1],
        tally=tally,
    )

    log_fn = log.info if check.passed else log.error
    log_fn(
        "sim.duplicate_check",
        event="sim.duplicate_check",
        topic_id=topic_id,
        passed=check.passed,
        first=check.first.outcome.value,
        second=check.second.outcome.value,
        second_label=check.second_label,
        yes_count=tally.yes_count,
        no_count=tally.no_count,
    )
    return check


async def run_expiration_check(
    client: TargetClient,
    *,
    window_minutes: int = 1,
    wait_seconds: float = 70.0,
    attempts: int = 2,
    codec: IdentifierCodec | None = None,
    logger: Logger | None = None,
) -> ExpirationCheckResult:
    """Open a short window, wait past its expiry, then vote with a fresh identifier.

    Every attempt is expected to come back ``RejectedOther`` with reason
    ``session_expired``; a ``TransportError`` or an acceptance fails the check.
    """
    log = logger or session_logger
    codec = codec or IdentifierCodec()

    topic_id = await _open_topic(client, "EXPIRATION CHECK", "Session expiration check", window_minutes)
    log.info(
        "sim.expiration_wait",
        event="sim.expiration_wait",
        topic_id=topic_id,
        window_minutes=window_minutes,
        wait_seconds=wait_seconds,
    )
    await asyncio.sleep(wait_seconds)

    identifier = codec.generate_valid()
    results = []
    for _ in range(attempts):
        results.append(await client.submit_vote(topic_id, identifier, VoteChoice.YES))

    check = ExpirationCheckResult(topic_id=topic_id, identifier=identifier, attempts=tuple(results))
    log_fn = log.info if check.passed else log.error
    log_fn(
        "sim.expiration_check",
        event="sim.expiration_check",
        topic_id=topic_id,
        passed=check.passed,
        outcomes=[r.outcome.value for r in results],
        reasons=[r.reason for r in results],
    )
    return check

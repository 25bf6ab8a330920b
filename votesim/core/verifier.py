from __future__ import annotations

import time
from collections import deque
from typing import Any, Protocol

from votesim.core.ledger import SubmissionLedger
from votesim.core.models import ConsistencySample, Tally, Verdict
from votesim.exceptions import TargetError, ValidationError
from votesim.logger import Logger, session_logger

DEFAULT_RETENTION = 20


class TallySource(Protocol):
    async def get_tally(self, topic_id: str) -> Tally: ...


def classify_counts(local_accepted: int, target_count: int, in_flight: int = 0) -> Verdict:
    """Compare the target's tally with the generator's accepted count.

    Votes still in flight may already be counted by the target, so a target
    count up to ``local_accepted + in_flight`` is not a divergence. With nothing
    in flight the comparison is exact.
    """
    if in_flight < 0:
        raise ValidationError("in_flight must be >= 0")
    if target_count < local_accepted:
        return Verdict.LAGGING
    if target_count <= local_accepted + in_flight:
        return Verdict.CONSISTENT
    return Verdict.INCONSISTENT


class ConsistencyVerifier:
    """Cross-checks the ledger's accepted count against the target's tally.

    Recent samples are kept in a bounded ring; verdict totals are kept for the
    whole run so an evicted ``Inconsistent`` sample still counts.
    """

    def __init__(
        self,
        client: TallySource,
        ledger: SubmissionLedger,
        *,
        retention: int = DEFAULT_RETENTION,
        logger: Logger | None = None,
    ) -> None:
        if retention <= 0:
            raise ValidationError("retention must be > 0")
        self._client = client
        self._ledger = ledger
        self._logger = logger or session_logger
        self._samples: deque[ConsistencySample] = deque(maxlen=retention)
        self._verdict_counts: dict[Verdict, int] = {v: 0 for v in Verdict}
        self._fetch_failures = 0
        self._final: ConsistencySample | None = None

    async def sample(self, topic_id: str) -> ConsistencySample | None:
        """Take one sample; returns None when the tally could not be fetched."""
        before = self._ledger.snapshot()
        try:
            tally = await self._client.get_tally(topic_id)
        except TargetError as exc:
            self._fetch_failures += 1
            self._logger.warning(
                "sim.consistency_fetch_failed",
                event="sim.consistency_fetch_failed",
                topic_id=topic_id,
                status_code=exc.status_code,
                error=str(exc),
            )
            return None
        after = self._ledger.snapshot()

        local_accepted = before.accepted
        in_flight = max(0, after.accepted + after.pending - local_accepted)
        verdict = classify_counts(local_accepted, tally.total, in_flight)

        sample = ConsistencySample(
            timestamp=time.time(),
            local_accepted=local_accepted,
            target_count=tally.total,
            verdict=verdict,
            in_flight=in_flight,
        )
        self._samples.append(sample)
        self._verdict_counts[verdict] += 1

        if verdict == Verdict.INCONSISTENT:
            self._logger.error(
                "sim.consistency_violation",
                event="sim.consistency_violation",
                topic_id=topic_id,
                local_accepted=local_accepted,
                in_flight=in_flight,
                target_count=tally.total,
                target_yes=tally.yes_count,
                target_no=tally.no_count,
                excess=tally.total - local_accepted - in_flight,
            )
        else:
            self._logger.debug(
                "sim.consistency_sample",
                event="sim.consistency_sample",
                topic_id=topic_id,
                local_accepted=local_accepted,
                in_flight=in_flight,
                target_count=tally.total,
                verdict=verdict.value,
            )
        return sample

    async def final_sample(self, topic_id: str) -> ConsistencySample | None:
        """Post-drain sample; the authoritative end-of-run check."""
        pending = self._ledger.pending_count()
        if pending:
            self._logger.warning(
                "sim.final_sample_not_drained",
                event="sim.final_sample_not_drained",
                pending=pending,
            )
        sample = await self.sample(topic_id)
        self._final = sample
        if sample is not None:
            self._logger.info(
                "sim.final_consistency",
                event="sim.final_consistency",
                topic_id=topic_id,
                local_accepted=sample.local_accepted,
                target_count=sample.target_count,
                verdict=sample.verdict.value,
            )
        return sample

    @property
    def samples(self) -> list[ConsistencySample]:
        return list(self._samples)

    @property
    def final(self) -> ConsistencySample | None:
        return self._final

    @property
    def fetch_failures(self) -> int:
        return self._fetch_failures

    def verdict_counts(self) -> dict[Verdict, int]:
        return dict(self._verdict_counts)

    def consistency_rate(self) -> float:
        total = sum(self._verdict_counts.values())
        if total == 0:
            return 1.0
        ok = self._verdict_counts[Verdict.CONSISTENT] + self._verdict_counts[Verdict.LAGGING]
        return ok / total

    def report(self) -> dict[str, Any]:
        return {
            "samples": sum(self._verdict_counts.values()),
            "consistent": self._verdict_counts[Verdict.CONSISTENT],
            "lagging": self._verdict_counts[Verdict.LAGGING],
            "inconsistent": self._verdict_counts[Verdict.INCONSISTENT],
            "fetch_failures": self._fetch_failures,
            "consistency_rate": round(self.consistency_rate(), 4),
            "recent": [s.to_dict() for s in self._samples],
            "final": self._final.to_dict() if self._final else None,
        }

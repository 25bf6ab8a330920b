from __future__ import annotations

import asyncio
import math
import signal
import time

from votesim.core.actor import (
    Actor,
    ActorConfig,
    ActorContext,
    IterationBudget,
    IterationRecord,
    RunCounters,
)
from votesim.core.identifier import UniqueIdentifierSource
from votesim.core.ledger import SubmissionLedger
from votesim.core.metrics import MetricsCollector
from votesim.core.mix import OperationMix
from votesim.core.models import Mode, SimulationConfig, SimulationResult, Topic
from votesim.core.stages import StageSchedule
from votesim.core.target_client import TargetClient
from votesim.core.verifier import ConsistencyVerifier
from votesim.exceptions import ConfigurationError, TargetError, ValidationError
from votesim.fixtures.voting_target import VotingFixtureServer
from votesim.logger import Logger, session_logger


class TopicProvider:
    """Creates and opens the run's shared topic exactly once.

    The first caller creates the topic under a lock. Callers that arrive while
    creation is in progress, or after it failed, get None and fail their
    iteration instead of blocking; a later call retries creation. Once the
    voting window expires the topic is no longer handed out.
    """

    def __init__(
        self,
        client,
        *,
        title: str,
        description: str,
        window_minutes: int,
        seconds_per_minute: float = 60.0,
        logger: Logger | None = None,
    ) -> None:
        if window_minutes < 1:
            raise ValidationError("window_minutes must be >= 1")
        if seconds_per_minute <= 0:
            raise ValidationError("seconds_per_minute must be > 0")
        self._client = client
        self._title = title
        self._description = description
        self._window_minutes = window_minutes
        self._seconds_per_minute = seconds_per_minute
        self._logger = logger or session_logger
        self._lock = asyncio.Lock()
        self._topic: Topic | None = None
        self._created_id: str | None = None
        self._created_at: float | None = None
        self._closed_logged = False
        self.creation_attempts = 0

    @property
    def topic(self) -> Topic | None:
        return self._topic

    @property
    def closed(self) -> bool:
        """True once the opened topic's window has expired. Never reopens."""
        return self._topic is not None and not self._topic.is_open(time.time())

    async def acquire(self) -> Topic | None:
        if self._topic is not None:
            return self._open_topic_or_none()
        if self._lock.locked():
            return None

        async with self._lock:
            if self._topic is not None:
                return self._open_topic_or_none()
            self.creation_attempts += 1

            if self._created_id is None:
                try:
                    self._created_id = await self._client.create_topic(self._title, self._description)
                except TargetError as exc:
                    self._logger.error(
                        "sim.topic_create_failed",
                        event="sim.topic_create_failed",
                        attempt=self.creation_attempts,
                        status_code=exc.status_code,
                        error=str(exc),
                        recovery="Check the target is reachable; the next iteration retries",
                    )
                    return None
                self._created_at = time.time()

            # A created but unopened topic is reused so retries never create a second one.
            opened = await self._client.open_window(self._created_id, self._window_minutes)
            if not opened:
                self._logger.error(
                    "sim.topic_open_failed",
                    event="sim.topic_open_failed",
                    topic_id=self._created_id,
                    attempt=self.creation_attempts,
                )
                return None

            self._topic = Topic(
                id=self._created_id,
                title=self._title,
                description=self._description,
                created_at=self._created_at or time.time(),
                window_minutes=self._window_minutes,
                opened_at=time.time(),
                window_seconds=self._window_minutes * self._seconds_per_minute,
            )
            self._logger.info(
                "sim.topic_ready",
                event="sim.topic_ready",
                topic_id=self._topic.id,
                window_minutes=self._window_minutes,
                attempts=self.creation_attempts,
            )
            return self._topic

    def _open_topic_or_none(self) -> Topic | None:
        topic = self._topic
        if topic.is_open(time.time()):
            return topic
        if not self._closed_logged:
            self._closed_logged = True
            self._logger.warning(
                "sim.topic_closed",
                event="sim.topic_closed",
                topic_id=topic.id,
                window_seconds=topic.window_seconds,
                recovery="Raise --window-minutes to cover the whole run",
            )
        return None


class EngineHooks:
    """Lifecycle hooks shared by every scenario.

    The default ``on_start`` logs a health check of the target; override the
    methods to add scenario-specific setup or teardown.
    """

    async def on_start(self, engine: "WorkloadEngine") -> None:
        healthy = await engine.client.health_check()
        if healthy:
            engine.logger.info("sim.health_ok", event="sim.health_ok")
        else:
            engine.logger.warning(
                "sim.health_failed",
                event="sim.health_failed",
                recovery="The target may not be ready; the run continues",
            )

    async def on_iterate(self, engine: "WorkloadEngine", record: IterationRecord) -> None:
        return None

    async def on_stop(self, engine: "WorkloadEngine", result: SimulationResult) -> None:
        return None


class WorkloadEngine:
    def __init__(
        self,
        config: SimulationConfig,
        *,
        client: TargetClient | None = None,
        hooks: EngineHooks | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._config = config
        self._logger = logger or session_logger
        self._hooks = hooks or EngineHooks()
        self._client = client
        self._owns_client = client is None
        self._schedule: StageSchedule | None = None
        self._started: float | None = None

        self.ledger = SubmissionLedger()
        self.metrics = MetricsCollector(logger=self._logger)
        self.counters = RunCounters()
        self.verifier: ConsistencyVerifier | None = None
        self.topics: TopicProvider | None = None

    @property
    def config(self) -> SimulationConfig:
        return self._config

    @property
    def logger(self) -> Logger:
        return self._logger

    @property
    def client(self) -> TargetClient:
        if self._client is None:
            raise RuntimeError("client is only available while the engine is running")
        return self._client

    @property
    def schedule(self) -> StageSchedule:
        if self._schedule is None:
            self._schedule = self._build_schedule()
        return self._schedule

    def elapsed(self) -> float:
        return 0.0 if self._started is None else time.monotonic() - self._started

    def active_target(self) -> int:
        return self.schedule.target_at(self.elapsed())

    def current_stage(self) -> str:
        return self.schedule.stage_name_at(self.elapsed())

    async def run(self) -> SimulationResult:
        self._validate()
        schedule = self.schedule
        mix = OperationMix.from_weights(self._config.operation_weights, yes_ratio=self._config.yes_ratio)

        fixture_server: VotingFixtureServer | None = None
        if self._config.mode == Mode.FIXTURE and self._client is None:
            fixture_server = VotingFixtureServer(
                api_prefix=self._config.api_prefix,
                seconds_per_minute=self._config.fixture_seconds_per_minute,
                logger=self._logger,
            )
            fixture_server.start()
            base_url = fixture_server.base_url
        else:
            base_url = self._config.base_url or ""

        if self._client is None:
            self._client = TargetClient(
                base_url,
                timeout_seconds=self._config.timeout_seconds,
                api_prefix=self._config.api_prefix,
                fast_fail_ms=self._config.fast_fail_ms,
                logger=self._logger,
            )

        self.verifier = ConsistencyVerifier(
            self._client,
            self.ledger,
            retention=self._config.sample_retention,
            logger=self._logger,
        )
        self.topics = TopicProvider(
            self._client,
            title=self._config.topic_title,
            description=self._config.topic_description,
            window_minutes=self._config.window_minutes,
            seconds_per_minute=self._config.minute_seconds,
            logger=self._logger,
        )

        stop_event = asyncio.Event()
        budget = IterationBudget(self._config.total_iterations)
        identifiers = UniqueIdentifierSource(
            run_start_ms=int(time.time() * 1000),
            actor_slots=max(1, schedule.peak),
        )

        async def _on_iterate(record: IterationRecord) -> None:
            await self._hooks.on_iterate(self, record)

        context = ActorContext(
            client=self._client,
            ledger=self.ledger,
            verifier=self.verifier,
            topics=self.topics,
            mix=mix,
            identifiers=identifiers,
            metrics=self.metrics,
            counters=self.counters,
            active_target=self.active_target,
            stage_name=self.current_stage,
            on_iterate=_on_iterate,
        )

        self._logger.info(
            "sim.start",
            event="sim.start",
            mode=self._config.mode.value,
            base_url=base_url,
            peak_actors=schedule.peak,
            stages=len(schedule.stages),
            duration_seconds=schedule.total_duration,
            total_iterations=self._config.total_iterations,
            operations=self._config.operation_weights,
            verify_probability=self._config.verify_probability,
        )

        def _handle_signal(signum: int, _frame) -> None:  # pragma: no cover
            self._logger.warning("sim.signal", event="sim.signal", signum=signum)
            stop_event.set()

        try:
            await self._hooks.on_start(self)
            # Setup creates the topic up front; actors fall back to lazy creation if this fails.
            await self.topics.acquire()
            self._started = time.monotonic()

            with _SignalHandlers(_handle_signal, logger=self._logger):
                actors = [
                    Actor(
                        ActorConfig(
                            actor_id=i,
                            rate_per_sec=self._config.rate_per_actor_per_sec,
                            verify_probability=self._config.verify_probability,
                            seed=self._config.seed,
                        ),
                        context,
                        logger=self._logger,
                    )
                    for i in range(schedule.peak)
                ]
                tasks = [asyncio.create_task(a.run(stop_event=stop_event, budget=budget)) for a in actors]

                timer: asyncio.Task[None] | None = None
                if math.isfinite(schedule.total_duration):
                    timer = asyncio.create_task(_stop_after(stop_event, schedule.total_duration))

                try:
                    # In-flight iterations finish; no new ones start once stop_event is set.
                    await asyncio.gather(*tasks)
                finally:
                    stop_event.set()
                    if timer is not None:
                        timer.cancel()

            ended = time.monotonic()
            topic = self.topics.topic
            final_sample = await self.verifier.final_sample(topic.id) if topic is not None else None

            ok, error = self.counters.snapshot()
            result = SimulationResult(
                started_at_monotonic=self._started,
                ended_at_monotonic=ended,
                iteration_count=ok + error,
                failure_count=error,
                suspected_races=self.counters.suspected_races,
                outcome_counts=dict(self.counters.outcomes),
                label_counts=dict(self.counters.labels),
                topic_id=topic.id if topic is not None else None,
                consistency=self.verifier.report(),
                final_sample=final_sample,
                metrics_report=await self.metrics.build_report(),
            )
            await self._hooks.on_stop(self, result)
        finally:
            if self._owns_client and self._client is not None:
                await self._client.aclose()
            if fixture_server is not None:
                fixture_server.stop()

        self._logger.info(
            "sim.end",
            event="sim.end",
            iteration_count=result.iteration_count,
            failure_count=result.failure_count,
            suspected_races=result.suspected_races,
            consistency_rate=self.verifier.consistency_rate(),
            final_verdict=final_sample.verdict.value if final_sample else None,
            duration_seconds=result.duration_seconds,
            throughput_ips=result.throughput_ips,
            passed=result.passed,
            failure_reasons=result.failure_reasons,
        )
        return result

    def _build_schedule(self) -> StageSchedule:
        if self._config.stages:
            return StageSchedule(self._config.stages)
        duration = self._config.duration_seconds
        return StageSchedule.constant(self._config.actors, duration if duration is not None else math.inf)

    def _validate(self) -> None:
        if not self._config.stages and self._config.actors < 1:
            raise ConfigurationError("actors must be >= 1 (or provide stages)")
        if (
            not self._config.stages
            and self._config.total_iterations is None
            and self._config.duration_seconds is None
        ):
            raise ConfigurationError("one of total_iterations, duration_seconds or stages must be provided")
        if self._config.rate_per_actor_per_sec <= 0:
            raise ConfigurationError("rate_per_actor_per_sec must be > 0")
        if not 0.0 <= self._config.verify_probability <= 1.0:
            raise ConfigurationError("verify_probability must be within [0, 1]")
        if self._config.window_minutes < 1:
            raise ConfigurationError("window_minutes must be >= 1")
        if self._config.fixture_seconds_per_minute <= 0:
            raise ConfigurationError("fixture_seconds_per_minute must be > 0")
        if not self._config.window_covers_run():
            raise ConfigurationError(
                "voting window closes before the run ends",
                details={
                    "window_seconds": self._config.window_seconds,
                    "planned_seconds": self._config.planned_seconds,
                },
            )
        if self._config.total_iterations is not None and self._config.total_iterations < 0:
            raise ConfigurationError("total_iterations must be >= 0")
        if self._config.mode == Mode.LIVE and self._client is None and not self._config.base_url:
            raise ConfigurationError("base_url is required in live mode")
        if self.schedule.peak < 1:
            raise ConfigurationError("stages never activate an actor")


async def _stop_after(stop_event: asyncio.Event, duration_seconds: float) -> None:
    await asyncio.sleep(max(0.0, duration_seconds))
    stop_event.set()


class _SignalHandlers:
    def __init__(self, handler, *, logger: Logger) -> None:
        self._handler = handler
        self._logger = logger
        self._previous: dict[int, object] = {}

    def __enter__(self):
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                self._previous[signum] = signal.signal(signum, self._handler)
            except (ValueError, OSError) as exc:
                # Only the main thread may install handlers.
                self._logger.debug(
                    "sim.signal_handler_skipped",
                    event="sim.signal_handler_skipped",
                    signum=int(signum),
                    error=str(exc),
                )
        return self

    def __exit__(self, exc_type, exc, tb):
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)  # type: ignore[arg-type]
        return False

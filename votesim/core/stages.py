"""Ramping schedules and duration parsing.

A schedule is an ordered list of stages. Each stage moves the active actor
count linearly from the previous target to its own target over its duration
(the same shape as k6's ``ramping-vus`` executor). The engine reads the current
stage from the schedule, so the phase of a run is always known exactly.
"""

from __future__ import annotations

import re

from votesim.core.models import Stage
from votesim.exceptions import ConfigurationError

_DURATION_RE = re.compile(r"^(?P<value>\d+(?:\.\d+)?)(?P<unit>ms|s|m|h)$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration_to_seconds(raw: str) -> float:
    """Parse duration strings like '500ms', '10s', '5m', '1h' into seconds."""
    match = _DURATION_RE.match(raw.strip())
    if not match:
        raise ValueError("duration must match <number><unit> where unit is ms|s|m|h")
    return float(match.group("value")) * _UNIT_SECONDS[match.group("unit")]


def parse_stages(raw: str) -> tuple[Stage, ...]:
    """Parse '30s:10,1m:50,30s:0' into stages."""
    stages: list[Stage] = []
    for index, chunk in enumerate(part.strip() for part in raw.split(",")):
        if not chunk:
            continue
        duration_text, sep, target_text = chunk.partition(":")
        if not sep:
            raise ConfigurationError("stage must look like <duration>:<target>", details={"stage": chunk})
        try:
            duration = parse_duration_to_seconds(duration_text)
            target = int(target_text)
        except ValueError as exc:
            raise ConfigurationError(str(exc), details={"stage": chunk}) from exc
        if target < 0:
            raise ConfigurationError("stage target must be >= 0", details={"stage": chunk})
        stages.append(Stage(duration_seconds=duration, target=target, name=f"stage-{index}"))

    if not stages:
        raise ConfigurationError("at least one stage is required", details={"stages": raw})
    return tuple(stages)


class StageSchedule:
    def __init__(self, stages: tuple[Stage, ...] | list[Stage], *, start_target: int = 0) -> None:
        if not stages:
            raise ValueError("stages must be non-empty")
        if start_target < 0:
            raise ValueError("start_target must be >= 0")
        self._stages = tuple(stages)
        self._start_target = start_target

    @classmethod
    def constant(cls, actors: int, duration_seconds: float) -> "StageSchedule":
        return cls((Stage(duration_seconds=duration_seconds, target=actors, name="steady"),), start_target=actors)

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self._stages

    @property
    def total_duration(self) -> float:
        return sum(s.duration_seconds for s in self._stages)

    @property
    def peak(self) -> int:
        return max([self._start_target] + [s.target for s in self._stages])

    def stage_at(self, elapsed: float) -> tuple[int, Stage]:
        """Return (index, stage) active at ``elapsed`` seconds; the last stage after the end."""
        boundary = 0.0
        for index, stage in enumerate(self._stages):
            boundary += stage.duration_seconds
            if elapsed < boundary:
                return index, stage
        return len(self._stages) - 1, self._stages[-1]

    def stage_name_at(self, elapsed: float) -> str:
        index, stage = self.stage_at(elapsed)
        return stage.name or f"stage-{index}"

    def target_at(self, elapsed: float) -> int:
        """Active actor count at ``elapsed`` seconds, linearly interpolated."""
        previous = self._start_target
        start = 0.0
        for stage in self._stages:
            end = start + stage.duration_seconds
            if elapsed < end:
                if stage.duration_seconds <= 0:
                    return stage.target
                fraction = (max(0.0, elapsed) - start) / stage.duration_seconds
                return int(round(previous + (stage.target - previous) * fraction))
            previous = stage.target
            start = end
        return self._stages[-1].target

from __future__ import annotations

import json
import random
from dataclasses import dataclass
from pathlib import Path

from votesim.core.models import Operation, VoteChoice
from votesim.exceptions import ConfigurationError

DEFAULT_YES_RATIO = 0.6


@dataclass(frozen=True)
class OperationMix:
    """Weighted operation picker plus the Yes/No vote distribution."""

    weights: dict[Operation, float]
    yes_ratio: float = DEFAULT_YES_RATIO

    def __post_init__(self) -> None:
        if not self.weights:
            raise ConfigurationError("operation mix must not be empty")
        if any(w < 0 for w in self.weights.values()):
            raise ConfigurationError("operation weights must be >= 0", details={"weights": self._raw()})
        if sum(self.weights.values()) <= 0:
            raise ConfigurationError("operation weights must sum to > 0", details={"weights": self._raw()})
        if not 0.0 <= self.yes_ratio <= 1.0:
            raise ConfigurationError("yes_ratio must be within [0, 1]", details={"yes_ratio": self.yes_ratio})

    @classmethod
    def from_weights(cls, weights: dict[str, float], *, yes_ratio: float = DEFAULT_YES_RATIO) -> "OperationMix":
        parsed: dict[Operation, float] = {}
        for name, weight in weights.items():
            try:
                operation = Operation(name)
            except ValueError as exc:
                known = ", ".join(o.value for o in Operation)
                raise ConfigurationError(
                    f"unknown operation {name!r} (known: {known})",
                    details={"operation": name},
                ) from exc
            parsed[operation] = float(weight)
        return cls(weights=parsed, yes_ratio=yes_ratio)

    def choose_operation(self, rng: random.Random) -> Operation:
        operations = [op for op, w in self.weights.items() if w > 0]
        weights = [self.weights[op] for op in operations]
        return rng.choices(operations, weights=weights, k=1)[0]

    def choose_choice(self, rng: random.Random) -> VoteChoice:
        return VoteChoice.YES if rng.random() < self.yes_ratio else VoteChoice.NO

    def _raw(self) -> dict[str, float]:
        return {op.value: w for op, w in self.weights.items()}


def load_mix_file(path: str) -> tuple[dict[str, float], float]:
    """Load an operation mix definition.

    Expected shape:
      {
        "operations": {
          "vote_fresh": 70,
          "vote_duplicate": 20,
          "check_results": 10
        },
        "choices": {"Yes": 60, "No": 40}
      }

    Returns (operation weights, yes ratio). ``choices`` is optional.
    """

    mix_path = Path(path)
    try:
        data = json.loads(mix_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"cannot read mix file: {exc}", details={"path": path}) from exc

    operations = data.get("operations") if isinstance(data, dict) else None
    if not isinstance(operations, dict) or not operations:
        raise ConfigurationError("mix file must contain a non-empty 'operations' object", details={"path": path})

    weights: dict[str, float] = {}
    for name, raw in operations.items():
        if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw < 0:
            raise ConfigurationError(f"mix entry {name!r} has invalid weight: {raw!r}", details={"path": path})
        if raw == 0:
            continue
        weights[str(name)] = float(raw)

    if not weights:
        raise ConfigurationError("mix file must include at least one operation with weight > 0", details={"path": path})

    yes_ratio = DEFAULT_YES_RATIO
    choices = data.get("choices")
    if choices is not None:
        if not isinstance(choices, dict):
            raise ConfigurationError("'choices' must be an object", details={"path": path})
        yes = float(choices.get(VoteChoice.YES.value, 0))
        no = float(choices.get(VoteChoice.NO.value, 0))
        if yes < 0 or no < 0 or yes + no <= 0:
            raise ConfigurationError("'choices' weights must be >= 0 and sum to > 0", details={"path": path})
        yes_ratio = yes / (yes + no)

    # Validate operation names early.
    OperationMix.from_weights(weights, yes_ratio=yes_ratio)
    return weights, yes_ratio

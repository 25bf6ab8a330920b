"""CPF-style identifiers used as the unique voter key.

An identifier is 11 digits. The last two are check digits computed with a
weighted modulo-11 checksum over the preceding 9 (resp. 10) digits. Strings of
11 identical digits are always invalid.
"""

from __future__ import annotations

import random
import re

from votesim.exceptions import ValidationError

IDENTIFIER_LENGTH = 11
BASE_LENGTH = 9

_BASE_SPACE = 10**BASE_LENGTH
# Must be coprime to 10**9 so the mapping n -> n * STRIDE mod 10**9 is a bijection.
_STRIDE = 7_919
_NON_DIGIT_RE = re.compile(r"\D")
_FORMATTED_RE = re.compile(r"^(\d{3})(\d{3})(\d{3})(\d{2})$")


def _check_digit(digits: list[int]) -> int:
    first_weight = len(digits) + 1
    total = sum(d * (first_weight - i) for i, d in enumerate(digits))
    check = 11 - (total % 11)
    return 0 if check >= 10 else check


class IdentifierCodec:
    """Generates and validates identifiers.

    Pass ``rng`` for reproducible generation in tests.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    @staticmethod
    def check_digits(base: str) -> str:
        """Return the two check digits for a 9-digit base."""
        if len(base) != BASE_LENGTH or not base.isdigit():
            raise ValidationError("base must be exactly 9 digits")
        digits = [int(c) for c in base]
        first = _check_digit(digits)
        second = _check_digit(digits + [first])
        return f"{first}{second}"

    @classmethod
    def complete(cls, base: str) -> str:
        return base + cls.check_digits(base)

    @staticmethod
    def is_valid(candidate: object) -> bool:
        if not isinstance(candidate, str):
            return False
        if len(candidate) != IDENTIFIER_LENGTH or not candidate.isascii() or not candidate.isdigit():
            return False
        if len(set(candidate)) == 1:
            return False

        digits = [int(c) for c in candidate]
        if digits[9] != _check_digit(digits[:9]):
            return False
        return digits[10] == _check_digit(digits[:10])

    def generate_valid(self) -> str:
        while True:
            base = "".join(str(self._rng.randrange(10)) for _ in range(BASE_LENGTH))
            identifier = self.complete(base)
            # Base 000000000 completes to 00000000000, which is invalid by rule.
            if self.is_valid(identifier):
                return identifier

    def generate_invalid(self) -> str:
        identifier = "".join(str(self._rng.randrange(10)) for _ in range(IDENTIFIER_LENGTH))
        if self.is_valid(identifier):
            return identifier[:10] + str((int(identifier[10]) + 1) % 10)
        return identifier

    def unique_batch(self, n: int) -> set[str]:
        if n < 0:
            raise ValidationError("n must be >= 0")
        batch: set[str] = set()
        while len(batch) < n:
            batch.add(self.generate_valid())
        return batch

    @staticmethod
    def format(identifier: str) -> str:
        """Render as ``XXX.XXX.XXX-XX``."""
        digits = IdentifierCodec.unformat(identifier)
        match = _FORMATTED_RE.match(digits)
        if not match:
            return digits
        return "{}.{}.{}-{}".format(*match.groups())

    @staticmethod
    def unformat(text: str) -> str:
        return _NON_DIGIT_RE.sub("", text)


class UniqueIdentifierSource:
    """Hands out valid identifiers that never collide within a run.

    The 9-digit base combines a time component (run start in ms) with the
    (actor, iteration) pair: ``iteration * actor_slots + actor_id`` is unique
    per pair and is spread over the base space by a stride coprime to 10**9.
    """

    def __init__(self, *, run_start_ms: int, actor_slots: int) -> None:
        if actor_slots < 1:
            raise ValidationError("actor_slots must be >= 1")
        self._offset = run_start_ms % _BASE_SPACE
        self._actor_slots = actor_slots

    def next_for(self, actor_id: int, iteration: int) -> str:
        if not 0 <= actor_id < self._actor_slots:
            raise ValidationError(f"actor_id {actor_id} outside 0..{self._actor_slots - 1}")
        if iteration < 0:
            raise ValidationError("iteration must be >= 0")

        ordinal = iteration * self._actor_slots + actor_id
        while True:
            base = (self._offset + ordinal * _STRIDE) % _BASE_SPACE
            identifier = IdentifierCodec.complete(f"{base:09d}")
            if IdentifierCodec.is_valid(identifier):
                return identifier
            # Only the ten repdigit bases land here. Jumping half the base space
            # can collide only after ~5 * 10**8 identifiers in one run.
            ordinal += _BASE_SPACE // 2 + 1

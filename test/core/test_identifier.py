"""Tests for identifier generation and validation."""

from __future__ import annotations

import random

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from votesim.core.identifier import IdentifierCodec, UniqueIdentifierSource

KNOWN_VALID = "52998224725"


class TestCheckDigits:
    def test_known_identifier(self):
        assert IdentifierCodec.check_digits("529982247") == "25"
        assert IdentifierCodec.complete("529982247") == KNOWN_VALID

    @pytest.mark.parametrize("base", ["", "12345678", "1234567890", "12345678a"])
    def test_rejects_malformed_base(self, base):
        with pytest.raises(ValueError):
            IdentifierCodec.check_digits(base)


class TestIsValid:
    def test_known_valid(self):
        assert IdentifierCodec.is_valid(KNOWN_VALID)

    def test_wrong_check_digit(self):
        assert not IdentifierCodec.is_valid("52998224726")
        assert not IdentifierCodec.is_valid("52998224715")

    @pytest.mark.parametrize("digit", "0123456789")
    def test_repdigits_are_invalid(self, digit):
        assert not IdentifierCodec.is_valid(digit * 11)

    @pytest.mark.parametrize(
        "candidate",
        [
            "",
            "5299822472",
            "529982247250",
            "529.982.247-25",
            "5299822472a",
            "５２９９８２２４７２５",
            None,
            52998224725,
        ],
    )
    def test_malformed_input_fails_closed(self, candidate):
        assert IdentifierCodec.is_valid(candidate) is False


class TestGeneration:
    def test_generate_valid_always_valid(self):
        codec = IdentifierCodec(random.Random(7))
        for _ in range(10_000):
            assert IdentifierCodec.is_valid(codec.generate_valid())

    def test_generate_invalid_never_valid(self):
        codec = IdentifierCodec(random.Random(11))
        for _ in range(10_000):
            candidate = codec.generate_invalid()
            assert len(candidate) == 11
            assert candidate.isdigit()
            assert not IdentifierCodec.is_valid(candidate)

    def test_seeded_generation_is_reproducible(self):
        first = IdentifierCodec(random.Random(3))
        second = IdentifierCodec(random.Random(3))
        assert [first.generate_valid() for _ in range(5)] == [second.generate_valid() for _ in range(5)]

    def test_unique_batch(self):
        batch = IdentifierCodec(random.Random(5)).unique_batch(500)
        assert len(batch) == 500
        assert all(IdentifierCodec.is_valid(i) for i in batch)

    def test_unique_batch_rejects_negative(self):
        with pytest.raises(ValueError):
            IdentifierCodec().unique_batch(-1)

    @given(st.text(alphabet="0123456789", min_size=9, max_size=9))
    @settings(max_examples=200, deadline=None)
    def test_completed_base_is_valid_unless_repdigit(self, base):
        identifier = IdentifierCodec.complete(base)
        assert IdentifierCodec.is_valid(identifier) == (len(set(identifier)) > 1)

    @given(st.text(alphabet="0123456789", min_size=9, max_size=9), st.integers(min_value=1, max_value=9))
    @settings(max_examples=200, deadline=None)
    def test_single_digit_change_in_check_digits_is_detected(self, base, delta):
        identifier = IdentifierCodec.complete(base)
        tampered = identifier[:10] + str((int(identifier[10]) + delta) % 10)
        assert not IdentifierCodec.is_valid(tampered)


class TestFormatting:
    def test_format(self):
        assert IdentifierCodec.format(KNOWN_VALID) == "529.982.247-25"

    def test_unformat(self):
        assert IdentifierCodec.unformat("529.982.247-25") == KNOWN_VALID

    def test_format_leaves_short_input_as_digits(self):
        assert IdentifierCodec.format("12-34") == "1234"


class TestUniqueIdentifierSource:
    def test_distinct_across_actors_and_iterations(self):
        source = UniqueIdentifierSource(run_start_ms=1_700_000_000_123, actor_slots=50)
        seen = {source.next_for(actor, it) for actor in range(50) for it in range(200)}
        assert len(seen) == 50 * 200
        assert all(IdentifierCodec.is_valid(i) for i in seen)

    def test_deterministic_for_same_inputs(self):
        a = UniqueIdentifierSource(run_start_ms=42, actor_slots=4)
        b = UniqueIdentifierSource(run_start_ms=42, actor_slots=4)
        assert a.next_for(3, 17) == b.next_for(3, 17)

    def test_repdigit_base_is_skipped(self):
        # Offset 0 with ordinal 0 maps to base 000000000.
        source = UniqueIdentifierSource(run_start_ms=0, actor_slots=1)
        identifier = source.next_for(0, 0)
        assert IdentifierCodec.is_valid(identifier)
        assert identifier != "00000000000"

    @pytest.mark.parametrize("actor_id,iteration", [(-1, 0), (4, 0), (0, -1)])
    def test_rejects_out_of_range(self, actor_id, iteration):
        source = UniqueIdentifierSource(run_start_ms=0, actor_slots=4)
        with pytest.raises(ValueError):
            source.next_for(actor_id, iteration)

    def test_rejects_zero_slots(self):
        with pytest.raises(ValueError):
            UniqueIdentifierSource(run_start_ms=0, actor_slots=0)

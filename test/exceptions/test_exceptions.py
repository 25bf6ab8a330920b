"""Tests for the custom exception hierarchy.

These tests verify:
1. Exception structure (message, details)
2. Inheritance hierarchy
3. String representation
"""

import pytest

from votesim.exceptions import (
    ConfigurationError,
    LedgerError,
    TargetError,
    ValidationError,
    VoteSimError,
)


class TestVoteSimError:
    """Tests for the base VoteSimError class."""

    def test_basic_construction(self):
        error = VoteSimError("Test message")

        assert error.message == "Test message"
        assert error.details == {}
        assert str(error) == "Test message"

    def test_construction_with_details(self):
        error = VoteSimError("Test message", details={"key1": "value1", "key2": 42})

        assert error.details == {"key1": "value1", "key2": 42}
        assert str(error) == "Test message (key1='value1', key2=42)"

    def test_can_be_raised_and_caught(self):
        with pytest.raises(VoteSimError) as exc_info:
            raise VoteSimError("boom")
        assert exc_info.value.message == "boom"


class TestSubclasses:
    @pytest.mark.parametrize("cls", [ValidationError, ConfigurationError, LedgerError, TargetError])
    def test_inherit_from_base(self, cls):
        assert issubclass(cls, VoteSimError)

    def test_target_error_fields(self):
        error = TargetError("tally request rejected", operation="get_tally", status_code=503, details={"error": "x"})

        assert error.operation == "get_tally"
        assert error.status_code == 503
        assert error.details == {"operation": "get_tally", "status_code": 503, "error": "x"}

    def test_validation_error_is_value_error(self):
        from votesim.core.identifier import IdentifierCodec

        with pytest.raises(ValidationError) as exc_info:
            IdentifierCodec.check_digits("123")
        assert isinstance(exc_info.value, ValueError)

    def test_configuration_error_caught_as_base(self):
        with pytest.raises(VoteSimError):
            raise ConfigurationError("bad stage", details={"stage": "30s"})

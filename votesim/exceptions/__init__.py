"""Custom exceptions for votesim."""

from votesim.exceptions.base import (
    ConfigurationError,
    LedgerError,
    TargetError,
    ValidationError,
    VoteSimError,
)

__all__ = [
    "VoteSimError",
    "ValidationError",
    "ConfigurationError",
    "TargetError",
    "LedgerError",
]

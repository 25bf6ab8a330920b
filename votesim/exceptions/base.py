"""Exception classes for votesim.

Per-iteration outcomes of a load run are classified values, not exceptions.
These exceptions cover programming errors, invalid configuration and
violations of the remote contract during setup or tally reads.
"""


class VoteSimError(Exception):
    """Base exception for all votesim errors."""

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if not self.details:
            return self.message
        rendered = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
        return f"{self.message} ({rendered})"


class ValidationError(VoteSimError, ValueError):
    """Raised when an argument fails validation.

    Also a ``ValueError`` so callers guarding plain argument errors catch it.
    """

    pass


class ConfigurationError(VoteSimError):
    """Raised when a run configuration, mix file or stage table is invalid."""

    pass


class TargetError(VoteSimError):
    """Raised when the target API answers a setup or read call outside its contract."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        status_code: int | None = None,
        details: dict | None = None,
    ) -> None:
        merged = {"operation": operation, "status_code": status_code}
        merged.update(details or {})
        super().__init__(message, details=merged)
        self.operation = operation
        self.status_code = status_code


class LedgerError(VoteSimError):
    """Raised on ledger misuse, e.g. finalizing an attempt twice."""

    pass

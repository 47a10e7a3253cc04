"""Ledger error taxonomy and response helpers."""

from typing import Any, Dict


class LedgerError(Exception):
    """Base ledger error."""

    retryable = False

    def __init__(self, message: str, code: str = "ledger_error"):
        """Initialize error."""
        self.message = message
        self.code = code
        super().__init__(message)


class DataValidationError(LedgerError):
    """Caller-fixable input problem (amount, receipt, percentages, dates)."""

    def __init__(self, message: str):
        super().__init__(message, "validation_error")


class NotFoundError(LedgerError):
    """Unit, settlement, charge or payment does not exist."""

    def __init__(self, message: str):
        super().__init__(message, "not_found")


class ConsistencyError(LedgerError):
    """Request contradicts the current ledger state."""

    def __init__(self, message: str):
        super().__init__(message, "consistency_error")


class ConcurrencyConflictError(LedgerError):
    """Another transaction changed the same unit or charge first.

    The caller should retry the whole operation from a fresh read.
    """

    retryable = True

    def __init__(self, message: str = "Concurrent modification detected, retry the operation"):
        super().__init__(message, "concurrency_conflict")


class LedgerInvariantError(LedgerError):
    """Ledger arithmetic produced an impossible state; the transaction is aborted."""

    def __init__(self, message: str):
        super().__init__(message, "ledger_invariant")


def error_payload(error: LedgerError) -> Dict[str, Any]:
    """Create a standardized error payload for collaborators."""
    return {
        "error": {
            "code": error.code,
            "message": error.message,
        }
    }


__all__ = [
    "LedgerError",
    "DataValidationError",
    "NotFoundError",
    "ConsistencyError",
    "ConcurrencyConflictError",
    "LedgerInvariantError",
    "error_payload",
]

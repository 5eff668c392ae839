from __future__ import annotations


class LedgerError(Exception):
    pass


class ValidationError(LedgerError):
    """Rejected input; nothing was persisted."""


class NotFoundError(LedgerError):
    pass


class IntegrityFault(LedgerError):
    """
    Data-integrity fault (bug or corruption), distinct from a user mistake.

    Raised when an invariant is violated, e.g. matched quantity exceeding a trade's
    quantity or fund holdings not summing to the outstanding units.
    """


class ConcurrencyConflict(LedgerError):
    """Retryable: a concurrent writer changed the same ledger scope."""

    retryable = True


class SnapshotInProgress(ConcurrencyConflict):
    def __init__(self, message: str, *, execution_id: str | None = None):
        super().__init__(message)
        self.execution_id = execution_id

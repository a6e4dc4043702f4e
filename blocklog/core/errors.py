"""
Ledger Error Taxonomy

Storage-level errors (TransientStoreError, StoreConflictError, ...) live in
blocklog.db.store next to the backends that raise them. This module holds
the errors raised by the ledger components themselves.

Propagation rules:
- AppendError reaches the Event Producer. The business operation that
  triggered it must not be treated as done.
- ChainInvariantViolation, RepairPreconditionError and RepairAbortedError
  are operator-facing only (logs, CLI exit codes, admin API).
- RaceDetected never leaves the Append Coordinator.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class AppendError(LedgerError):
    """
    Raised when an append could not be completed after all retries.

    Recoverable: the caller should retry the whole business operation
    or surface an operator-visible warning. Never proceed silently.
    """

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ChainForkError(LedgerError):
    """
    Raised when a raced entry could not be withdrawn.

    The entry IS durable (the event is recorded), but another writer has
    already built on top of it, so the chain is broken at repair_from_id
    until an operator runs the repair tool. Do not re-record the event.
    """

    def __init__(self, message: str, sequence_id: int, repair_from_id: int):
        super().__init__(message)
        self.sequence_id = sequence_id
        self.repair_from_id = repair_from_id


class RaceDetected(LedgerError):
    """Internal: a concurrent append interleaved with ours. Triggers a retry."""

    def __init__(self, message: str, sequence_id: Optional[int] = None):
        super().__init__(message)
        self.sequence_id = sequence_id


class ChainInvariantViolation(LedgerError):
    """Raised when an entry's link or hash does not verify."""

    def __init__(self, message: str, sequence_id: int, violation: str):
        super().__init__(message)
        self.sequence_id = sequence_id
        self.violation = violation


class RepairPreconditionError(LedgerError):
    """
    Raised when a repair cannot start.

    Fatal to that repair invocation; the operator has to re-investigate
    (bad start_id, missing anchor entry, no journal for an apply run).
    """
    pass


class RepairAbortedError(LedgerError):
    """
    Raised when an apply run stops part way through.

    Entries before failed_id are repaired; failed_id and everything after it
    are not. Rerunning from the same anchor finishes the job. failed_id is
    None when every change was written but the completion record was not.
    """

    def __init__(self, message: str, failed_id: Optional[int], applied_count: int):
        super().__init__(message)
        self.failed_id = failed_id
        self.applied_count = applied_count

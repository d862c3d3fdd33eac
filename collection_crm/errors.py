"""Exceptions raised by the reconciliation engine.

Validation problems and duplicate collisions are *not* exceptions: they are
expected outcomes returned as ``ValidationResult`` / ``DuplicateReport``.
Everything here aborts the enclosing transaction.
"""

from __future__ import annotations

from typing import Optional


class ReconciliationError(Exception):
    """Base class for failures that abort a record mutation."""


class MalformedIdentifier(ReconciliationError):
    def __init__(self, identifier: str) -> None:
        super().__init__(f"Stored identifier {identifier!r} has no numeric suffix")
        self.identifier = identifier


class InvalidPolicy(ReconciliationError):
    def __init__(self, policy: object) -> None:
        super().__init__(f"Unknown duplicate policy: {policy!r}")
        self.policy = policy


class MissingActor(ReconciliationError):
    def __init__(self, operation: str = "mutation") -> None:
        super().__init__(f"An actor identity is required for {operation}")
        self.operation = operation


class StorageError(ReconciliationError):
    """A backing store failure; the transaction has already been rolled back."""

    def __init__(self, message: str, *, retryable: bool = False, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.detail = detail


class UploadTimeout(ReconciliationError):
    def __init__(self, upload_id: str, processed: int, total: int) -> None:
        super().__init__(
            f"Upload {upload_id} did not finish in time ({processed}/{total} records); nothing was committed"
        )
        self.upload_id = upload_id
        self.processed = processed
        self.total = total

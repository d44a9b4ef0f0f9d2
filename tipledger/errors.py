from typing import Optional
from uuid import UUID


class TipLedgerError(Exception):
    code = "INTERNAL_ERROR"


class ValidationError(TipLedgerError):
    """Malformed input supplied by the caller. Never retried."""

    code = "VALIDATION_ERROR"


class ConflictError(TipLedgerError):
    """The requested write collides with existing state (e.g. a batch for the same period)."""

    code = "CONFLICT"

    def __init__(self, message: str, batch_id: Optional[UUID] = None):
        super().__init__(message)
        self.batch_id = batch_id


class NotFoundError(TipLedgerError):
    """A referenced row is missing. Usually means upstream data corruption."""

    code = "NOT_FOUND"


class ProcessorError(TipLedgerError):
    """Storage or transport failure. Potentially transient."""

    code = "PROCESSOR_ERROR"

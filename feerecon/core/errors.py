# feerecon/core/errors.py

"""
Error taxonomy for the reconciliation engine.

Data-quality problems (non-positive expected amounts, blank plan references)
are counted and reported, never raised.
Per-record validation failures inside a batch are counted on the SyncReport;
ValidationFailure exists for the single-record path.
"""


class ReconciliationError(Exception):
    """Base class for engine errors."""


class PreconditionViolation(ReconciliationError):
    """Rejected before any state mutation (empty pending set, missing reason...)."""


class RateLimited(ReconciliationError):
    """The CRM refused a call due to request volume."""

    def __init__(self, message: str = "Rate limited", retry_after_seconds: int = 60):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class TransportFailure(ReconciliationError):
    """The remote call itself could not complete (network, malformed response)."""


class ValidationFailure(ReconciliationError):
    """A single record was rejected by the CRM."""

    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(message)
        self.record_id = record_id

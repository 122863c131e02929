"""
Exception hierarchy for the ingestion-merge-notify pipeline.

Provider failures are split into transient (worth retrying) and permanent
ones; store failures abort the current job without touching its cursor.
"""
from typing import Optional


class StatsyncError(Exception):
    """Base class for all pipeline errors."""


class ProviderError(StatsyncError):
    """Non-retryable error returned by the stats provider (4xx, bad payload)."""

    def __init__(self, message: str, status_code: Optional[int] = None, resource: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.resource = resource


class TransientProviderError(ProviderError):
    """Retryable provider failure: 5xx, 429, timeout or transport error."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        resource: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, resource=resource)
        self.retry_after = retry_after


class StoreUnavailableError(StatsyncError):
    """The database could not be read or written."""


class UnknownEntityError(StatsyncError):
    """Requested entity type has no registered sync spec."""

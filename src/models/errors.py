"""Error types raised by the indexing pipeline.

Remote failures are translated into these types at the Slack boundary so the
orchestrator can decide what is fatal for a run and what only costs one chunk.
"""

from typing import Optional


class IndexerError(Exception):
    """Base class for all indexing errors."""


class ConfigurationError(IndexerError):
    """Invalid or missing configuration (token, vector size, collection layout).

    Fatal at startup and never retried.
    """


class RemoteError(IndexerError):
    """Base class for errors coming from the Slack Web API."""

    def __init__(self, message: str, method: Optional[str] = None, status: Optional[int] = None):
        """Initialize with the failing API method and HTTP status if known."""
        super().__init__(message)
        self.method = method
        self.status = status


class RateLimitedError(RemoteError):
    """Slack kept rate limiting the call after all retry attempts."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        status: Optional[int] = 429,
        retry_after: Optional[float] = None,
    ):
        """Initialize with the last server supplied Retry-After hint."""
        super().__init__(message, method=method, status=status)
        self.retry_after = retry_after


class RemoteNotFoundError(RemoteError):
    """Channel, thread or user does not exist or is not visible to the bot."""


class RemoteTransientError(RemoteError):
    """Any other remote failure (5xx, network, unexpected Slack error)."""


class StorageConflictError(IndexerError):
    """The store holds more than one chunk for a key; indicates a schema bug."""


class IndexingError(IndexerError):
    """A channel run failed; `stage` records where it stopped."""

    def __init__(self, stage: str, message: str):
        """Initialize with the stage name reached when the run failed."""
        super().__init__(f"{stage}: {message}")
        self.stage = stage

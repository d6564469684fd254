"""
Scraper Exceptions - Error taxonomy shared by all pipeline components.

InvalidInput        - malformed URL or configuration value
FetchTransient      - retryable network/HTTP failure (handled by backoff)
FetchFailed         - task dropped after a non-recoverable fetch failure
                      (PermanentlyBlocked once the retry limit is exceeded)
ParseSkip           - one entry could not be extracted from a page
CheckpointCorrupt   - checkpoint failed its integrity check at startup
"""

from enum import Enum
from typing import Optional


class ScraperError(Exception):
    """Base class for all scraper errors."""
    pass


class InvalidInput(ScraperError):
    """Raised for a malformed URL or configuration value."""
    pass


class ConfigurationError(InvalidInput):
    """Raised when configuration is invalid."""
    pass


class FailureReason(Enum):
    """Why a fetch task was dropped."""
    PERMANENTLY_BLOCKED = "PermanentlyBlocked"  # Retry limit exceeded
    HTTP_STATUS = "HTTPStatus"  # Non-retryable status code
    CONTENT_TOO_LARGE = "ContentTooLarge"
    REQUEST_ERROR = "RequestError"  # Invalid URL, too many redirects, undecodable body


class FetchTransient(ScraperError):
    """Retryable fetch failure (429/503, connection error, timeout)."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.status_code = status_code
        self.retry_after = retry_after


class FetchFailed(ScraperError):
    """Fetch task dropped; surfaced to the caller and logged."""

    def __init__(self, url: str, reason: FailureReason, message: str = "",
                 status_code: Optional[int] = None, attempt_count: int = 0):
        detail = f" ({message})" if message else ""
        super().__init__(f"FetchFailed({reason.value}) {url}{detail}")
        self.url = url
        self.reason = reason
        self.status_code = status_code
        self.attempt_count = attempt_count


class ParseSkip(ScraperError):
    """An entry was skipped because it could not be fully populated."""
    pass


class CheckpointCorrupt(ScraperError):
    """Checkpoint cannot be trusted; a fresh run is required."""
    pass

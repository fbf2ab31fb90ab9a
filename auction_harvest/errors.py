"""Error taxonomy for the collection and transfer pipelines."""
from typing import Optional


class HarvestError(Exception):
    """Base class for all pipeline errors."""


class TransientNetworkError(HarvestError):
    """Network failure or timeout; retried with backoff."""


class UpstreamHTTPError(TransientNetworkError):
    """Non-2xx status other than 404/429; retried like a network failure."""

    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"HTTP {status_code} for {url}")


class RateLimited(TransientNetworkError):
    """429 that kept coming back after the allowed number of waits."""

    def __init__(self, url: str, retry_after: float):
        self.url = url
        self.retry_after = retry_after
        super().__init__(f"Rate limited on {url} (retry-after {retry_after}s)")


class NotFound(HarvestError):
    """Source object is known to be absent. Never retried."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"404 Not Found: {url}")


class ExhaustedRetries(HarvestError):
    """All attempts for a single request or transfer failed."""

    def __init__(self, description: str, attempts: int, last_error: Optional[BaseException] = None):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Failed after {attempts} attempts: {description}{detail}")


class PersistenceError(HarvestError):
    """A domain record or checkpoint could not be written."""


class StoreError(HarvestError):
    """Object store operation failed."""


class ConfigurationError(HarvestError, ValueError):
    """Missing or invalid configuration. Fatal before any work begins."""

"""Exceptions raised by enrichment sources and the enrichment service."""

from typing import Optional


class EnrichmentError(Exception):
    """Base class for every failure an enrichment attempt can report.

    Sources raise subclasses of this from ``enrich``; the service catches
    only this family while walking the fallback chain.
    """

    def __init__(self, message: str, original_error: Exception = None):
        """Initialize EnrichmentError.

        Args:
            message: Human-readable error message
            original_error: Underlying exception, if any
        """
        super().__init__(message)
        self.original_error = original_error


class NoIdentifierError(EnrichmentError):
    """No usable identifier was supplied."""

    def __init__(self, message: str = "No identifier available for enrichment"):
        super().__init__(message)


class NotFoundError(EnrichmentError):
    """The source has no record for the given identifiers."""

    def __init__(self, message: str = "Paper not found in enrichment source"):
        super().__init__(message)


class RateLimitedError(EnrichmentError):
    """The source reported throttling.

    This is the remote API telling us to back off, distinct from our own
    local rate limiter making the caller wait.
    """

    def __init__(self, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        if retry_after is not None:
            message = f"Rate limited. Retry after {retry_after:g} seconds"
        else:
            message = "Rate limited. Please try again later"
        super().__init__(message)

    @classmethod
    def from_header(cls, value: Optional[str]) -> "RateLimitedError":
        """Create from a ``Retry-After`` header value (seconds form only)."""
        if value:
            try:
                return cls(float(value))
            except ValueError:
                pass
        return cls()


class NetworkError(EnrichmentError):
    """Transport failure or unexpected HTTP status."""

    def __init__(self, detail: str, original_error: Exception = None):
        self.detail = detail
        super().__init__(f"Network error: {detail}", original_error=original_error)

    @classmethod
    def from_status(cls, status_code: int) -> "NetworkError":
        return cls(f"HTTP {status_code}")


class ParseError(EnrichmentError):
    """The source answered but the payload could not be understood."""

    def __init__(self, detail: str, original_error: Exception = None):
        self.detail = detail
        super().__init__(f"Failed to parse response: {detail}", original_error=original_error)


class AuthenticationRequiredError(EnrichmentError):
    """The source needs credentials that are missing or were rejected."""

    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Authentication required for {source_id}")


class NoSourceAvailableError(EnrichmentError):
    """No registered source was able to attempt the request."""

    def __init__(self, message: str = "No enrichment source could provide data"):
        super().__init__(message)

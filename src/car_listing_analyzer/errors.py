"""Exception hierarchy for car-listing-analyzer.

Parsing errors are fatal for a single page, repository errors for a single
record, and AI errors carry enough information (``status_code``,
``retryable``) for the analysis pipeline to classify failures.
"""

from __future__ import annotations


class ConfigError(Exception):
    """A parser schema or config file is missing, malformed, or incomplete."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class ExtractionError(Exception):
    """The structured-data payload of a page could not be found or parsed."""


class PageTypeError(Exception):
    """Base class for page-type detection failures."""


class UnknownPageTypeError(PageTypeError):
    """Neither the search nor the detail indicator matched the payload."""


class PageTypeMismatchError(PageTypeError):
    """The detected page type differs from the one the caller expected."""

    def __init__(self, expected: str, detected: str):
        super().__init__(f"Page type mismatch: expected {expected}, detected {detected}")
        self.expected = expected
        self.detected = detected


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class RepositoryError(Exception):
    """Base class for vehicle repository failures."""


class DuplicateVehicleError(RepositoryError):
    """A vehicle with the same ``source_url`` is already stored."""


class VehicleNotFoundError(RepositoryError):
    """No vehicle exists with the requested id."""


# ---------------------------------------------------------------------------
# AI provider
# ---------------------------------------------------------------------------

class AIError(Exception):
    """Failure talking to (or interpreting) the generative model."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class RateLimitError(AIError):
    """The provider rejected the call because of rate limiting."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429, retryable=True)
        self.retry_after = retry_after


class AuthenticationError(AIError):
    """The API key is missing or was rejected."""

    def __init__(self, message: str):
        super().__init__(message, status_code=401, retryable=False)


class ValidationError(AIError):
    """The model answered, but the answer violates its contract."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, status_code=400, retryable=False)
        self.field = field

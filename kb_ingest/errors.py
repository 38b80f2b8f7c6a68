"""Error taxonomy for the insertion pipeline."""

from __future__ import annotations

from typing import Optional


class IngestError(Exception):
    """Base class for pipeline errors."""

    retryable = False


class TransientIOError(IngestError):
    """Network failure, timeout or 5xx/429 response. Retried with backoff."""

    retryable = True


class MalformedResponseError(IngestError):
    """A provider answered with a body that cannot be used. Retried."""

    retryable = True


class ValidationError(IngestError):
    """Bad data (dimension mismatch, malformed record). Never retried."""


class ConfigurationError(IngestError):
    """Missing or invalid configuration, or an endpoint unusable at startup."""


class RequestRejectedError(IngestError):
    """A sink refused the request with a non-retryable 4xx status."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class EmbeddingFailed(IngestError):
    """An embedding sub-batch exhausted its retries."""

    def __init__(self, message: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


def is_retryable(exc: BaseException) -> bool:
    """Return True when ``exc`` is worth another attempt."""
    return bool(getattr(exc, "retryable", False))

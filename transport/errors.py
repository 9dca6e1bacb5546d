"""Error taxonomy for the remote embedding and vector store services.

Two families live here:

- ``ServiceError`` and subclasses describe a single failed call to a remote
  service. They are classified into an ``ErrorKind`` that the delivery stage
  turns into a per-chunk outcome; they never abort a run.
- ``IndexingError`` and subclasses are pipeline-fatal: bad configuration or a
  storage backend that cannot be initialised. They propagate to the caller.

HTTP status policy
------------------
- 408, 429, 5xx  -> transient (retry with backoff)
- 423            -> locked (defer behind the dedup lock)
- other 4xx      -> permanent (never retried)
"""

import asyncio
from enum import Enum
from typing import Optional

import httpx

__all__ = [
    'ErrorKind',
    'ServiceError',
    'TransientServiceError',
    'PermanentServiceError',
    'ResourceLockedError',
    'ServiceUnavailableError',
    'IndexingError',
    'ConfigurationError',
    'StorageInitializationError',
    'RETRYABLE_STATUS_CODES',
    'classify_error',
    'classify_message',
    'error_for_status',
]

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
LOCKED_STATUS_CODE = 423

# Substrings reported by the services in per-item error strings
LOCKED_MARKERS = ('locked', 'busy', 'task is running', 'already in progress')
TRANSIENT_MARKERS = (
    'timeout', 'timed out', 'econnreset', 'etimedout', 'econnrefused',
    'connection reset', 'not ready', 'temporarily unavailable', 'try again',
)


class ErrorKind(str, Enum):
    """How a failed call should be handled by the retry executor."""

    TRANSIENT = 'transient'
    PERMANENT = 'permanent'
    LOCKED = 'locked'


class ServiceError(Exception):
    """A remote call failed."""

    kind = ErrorKind.PERMANENT

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransientServiceError(ServiceError):
    """Timeouts, resets, overload. Worth retrying."""

    kind = ErrorKind.TRANSIENT


class PermanentServiceError(ServiceError):
    """Validation or format errors. Retrying cannot help."""

    kind = ErrorKind.PERMANENT


class ResourceLockedError(ServiceError):
    """The service is already working on the same unit of work."""

    kind = ErrorKind.LOCKED


class ServiceUnavailableError(TransientServiceError):
    """The service could not be reached at all."""


class IndexingError(Exception):
    """Base class for errors that abort an indexing run."""


class ConfigurationError(IndexingError):
    """Configuration is missing or invalid."""


class StorageInitializationError(IndexingError):
    """The configured storage backend cannot be initialised."""


def classify_message(message: Optional[str]) -> ErrorKind:
    """Classify a per-item error string returned inside a service response."""
    text = (message or '').lower()
    if any(marker in text for marker in LOCKED_MARKERS):
        return ErrorKind.LOCKED
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def classify_status(status_code: int) -> ErrorKind:
    """Classify an HTTP status code."""
    if status_code == LOCKED_STATUS_CODE:
        return ErrorKind.LOCKED
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def error_for_status(status_code: int, message: str) -> ServiceError:
    """Build the ServiceError subclass matching an HTTP status code."""
    kind = classify_status(status_code)
    if kind is ErrorKind.LOCKED:
        return ResourceLockedError(message, status_code)
    if kind is ErrorKind.TRANSIENT:
        if status_code == 503:
            return ServiceUnavailableError(message, status_code)
        return TransientServiceError(message, status_code)
    return PermanentServiceError(message, status_code)


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify any exception raised by a remote call.

    httpx transport errors (timeouts, network errors, a server sending invalid
    HTTP) are transient. Local protocol errors, bad URLs and decoding errors
    point at our own bug and are permanent.
    """
    if isinstance(exc, ServiceError):
        return exc.kind
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT

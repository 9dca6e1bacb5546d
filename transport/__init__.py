"""Error taxonomy and HTTP helpers shared by the remote service clients."""

from .errors import (
    ErrorKind,
    ServiceError,
    TransientServiceError,
    PermanentServiceError,
    ResourceLockedError,
    ServiceUnavailableError,
    IndexingError,
    ConfigurationError,
    StorageInitializationError,
    classify_error,
    classify_message,
)

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
    'classify_error',
    'classify_message',
]

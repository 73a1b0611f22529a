"""
Storage exceptions.

Backend-specific errors (botocore, httpx) are translated into these at the
storage boundary; nothing above the gateway sees provider exception types.
"""
from typing import Optional


class StorageError(Exception):
    """Base class for all attachment storage failures."""

    def __init__(self, message: str, backend: Optional[str] = None):
        super().__init__(message)
        self.backend = backend


class StorageNotConfiguredError(StorageError):
    """The requested backend has no credentials (raised only when enforcing)."""


class UpstreamStorageError(StorageError):
    """A configured backend rejected or failed a request."""

    def __init__(self, message: str, backend: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, backend)
        self.status_code = status_code


class SignedUrlRejectedError(UpstreamStorageError):
    """A signed URL was refused by the backend (expired or unauthorized)."""


class UploadRelayError(UpstreamStorageError):
    """The server-side PUT to a caller-supplied signed URL failed."""


class BlobNotFoundError(StorageError):
    """No object exists for the given storage key."""


class UnsupportedOperationError(StorageError):
    """The active backend cannot perform the requested operation."""

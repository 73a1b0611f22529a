"""
Value types returned by the blob gateway.

Every gateway result is tagged with the path that produced it, so callers and
tests can tell a clean save from a degraded one without inspecting fields:

    Saved     - the selected backend handled the request
    Degraded  - the selected backend was unavailable; a fallback was used
    Failed    - an attempt failed; raised as-is when remote uploads are enforced
"""
import enum
from dataclasses import dataclass
from typing import AsyncIterator, Generic, Optional, TypeVar, Union

from jobtracker.storage.errors import StorageError


class StorageBackend(str, enum.Enum):
    """Physical attachment storage strategies, in priority order."""
    OBJECTSTORE = "objectstore"
    REMOTEBLOB = "remoteblob"
    LOCAL = "local"


@dataclass(frozen=True)
class StoredObject:
    """Bytes written to a backend."""
    url: Optional[str]
    storage_key: str
    size: int


@dataclass(frozen=True)
class SignedUpload:
    """Canonical phase-1 negotiation result.

    upload_url is None when the caller must send bytes through the server.
    """
    upload_url: Optional[str]
    url: Optional[str]
    storage_key: str


@dataclass(frozen=True)
class SignedDownload:
    url: str
    storage_key: str


@dataclass
class ObjectStream:
    """An object body streamed from the object store."""
    chunks: AsyncIterator[bytes]
    content_type: str
    content_length: Optional[int] = None


T = TypeVar("T")


@dataclass(frozen=True)
class Saved(Generic[T]):
    value: T
    backend: StorageBackend
    degraded = False


@dataclass(frozen=True)
class Degraded(Generic[T]):
    value: T
    backend: StorageBackend
    reason: str
    degraded = True


@dataclass(frozen=True)
class Failed:
    error: StorageError
    backend: StorageBackend

    @property
    def reason(self) -> str:
        return str(self.error)

    def raise_error(self) -> None:
        raise self.error


StorageResult = Union[Saved[T], Degraded[T]]

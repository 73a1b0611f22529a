"""
Attachment storage.

BlobGateway is the single entry point; it selects between the S3-compatible
object store (R2), the remote blob service and local disk on every call.
"""
from jobtracker.storage.gateway import BlobGateway, canonicalize_signed_upload
from jobtracker.storage.outcomes import (
    Degraded,
    Failed,
    Saved,
    SignedDownload,
    SignedUpload,
    StorageBackend,
    StoredObject,
)

__all__ = [
    "BlobGateway",
    "canonicalize_signed_upload",
    "Degraded",
    "Failed",
    "Saved",
    "SignedDownload",
    "SignedUpload",
    "StorageBackend",
    "StoredObject",
]

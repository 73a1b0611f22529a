"""
Pydantic schemas for API request/response validation.
"""
from jobtracker.schemas.job import JobResponse
from jobtracker.schemas.upload import (
    AttachmentResponse,
    DeletedAttachmentResponse,
    SignedUploadResponse,
    UploadCreateRequest,
    UploadRequest,
)

__all__ = [
    "AttachmentResponse",
    "DeletedAttachmentResponse",
    "JobResponse",
    "SignedUploadResponse",
    "UploadCreateRequest",
    "UploadRequest",
]

"""
Business logic services.
"""
from jobtracker.services.upload_service import (
    AttachmentNotFoundError,
    AttachmentValidationError,
    TransferRoute,
    UploadService,
    choose_transfer_route,
)

__all__ = [
    "AttachmentNotFoundError",
    "AttachmentValidationError",
    "TransferRoute",
    "UploadService",
    "choose_transfer_route",
]

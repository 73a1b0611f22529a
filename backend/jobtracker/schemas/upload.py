"""
Pydantic schemas for upload endpoints.

Fields are snake_case in Python and camelCase on the wire. Request fields are
optional at the schema level so a missing field is reported by the service as
a 400 with a readable message.
"""
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from jobtracker.storage.outcomes import SignedUpload


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadCreateRequest(CamelModel):
    """Phase 1: ask for an upload target."""
    filename: Optional[str] = Field(None, description="Client file name")
    content_type: Optional[str] = Field(None, description="MIME type of the file")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"filename": "resume.pdf", "contentType": "application/pdf"}
        }
    )


class SignedUploadResponse(CamelModel):
    """
    Canonical negotiation result.

    upload_url is null when the caller must send the bytes to POST /uploads.
    """
    upload_url: Optional[str] = Field(None, description="Signed PUT URL")
    url: Optional[str] = Field(None, description="Where the file will be readable")
    storage_key: Optional[str] = Field(None, description="Backend locator to send back on persist")

    @classmethod
    def from_signed(cls, signed: SignedUpload) -> "SignedUploadResponse":
        return cls(upload_url=signed.upload_url, url=signed.url, storage_key=signed.storage_key)


class UploadRequest(CamelModel):
    """
    POST /uploads body.

    Metadata mode: {jobId, filename, url, storageKey, size, contentType}
    Server mode:   {jobId, filename, contentBase64, contentType, uploadUrl?}
    """
    job_id: Optional[str] = Field(None, description="Owning job")
    filename: Optional[str] = None
    content_type: Optional[str] = None

    # metadata mode
    url: Optional[str] = None
    storage_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("storageKey", "storage_key", "key")
    )
    size: Optional[int] = Field(None, ge=0)

    # server mode
    content_base64: Optional[str] = None
    upload_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("uploadUrl", "uploadURL", "upload_url")
    )

    # replace the job's files list instead of merging into it
    replace_files: bool = False

    @property
    def carries_bytes(self) -> bool:
        return self.content_base64 is not None or bool(self.upload_url)


class AttachmentResponse(CamelModel):
    """Persisted attachment record."""
    id: str
    owner_id: Optional[str] = None
    filename: str
    storage_key: Optional[str] = None
    url: Optional[str] = None
    size: Optional[int] = None
    content_type: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeletedAttachmentResponse(CamelModel):
    id: str
    owner_id: Optional[str] = None

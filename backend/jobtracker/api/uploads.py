"""
Upload endpoints.

Two-phase attachment upload:
1. POST /uploads/create - negotiate a target (signed PUT URL or none)
2. PUT to the signed URL from the client, or POST the bytes to /uploads
3. POST /uploads with the metadata (after a client PUT)

GET /uploads/{id} serves or redirects to the bytes; DELETE /uploads/{id}
removes bytes (best-effort) and the record.

Request validation failures come back as 400, see api/errors.py.
"""
from typing import Union
from urllib.parse import quote

from fastapi import APIRouter, Depends, status
from fastapi.responses import FileResponse, RedirectResponse

from jobtracker.api.dependencies import get_upload_service
from jobtracker.schemas.upload import (
    AttachmentResponse,
    DeletedAttachmentResponse,
    SignedUploadResponse,
    UploadCreateRequest,
    UploadRequest,
)
from jobtracker.services.upload_service import AttachmentNotFoundError, UploadService

router = APIRouter()


def inline_disposition(filename: str) -> str:
    """Content-Disposition value for inline display; quotes are stripped."""
    cleaned = (filename or "").replace('"', "") or "file"
    ascii_name = cleaned.encode("ascii", "ignore").decode("ascii") or "file"
    value = f'inline; filename="{ascii_name}"'
    if ascii_name != cleaned:
        value += f"; filename*=utf-8''{quote(cleaned)}"
    return value


@router.post("/create", response_model=SignedUploadResponse)
async def create_upload_url(
    request: UploadCreateRequest,
    service: UploadService = Depends(get_upload_service),
):
    """
    Negotiate an upload target.

    uploadUrl set: PUT the bytes there (or relay them through POST /uploads
    when it is on another origin). uploadUrl null: POST the bytes to
    /uploads as contentBase64.
    """
    result = await service.negotiate(request.filename, request.content_type)
    return SignedUploadResponse.from_signed(result.value)


@router.post("", response_model=AttachmentResponse, status_code=status.HTTP_201_CREATED)
async def create_upload(
    request: UploadRequest,
    service: UploadService = Depends(get_upload_service),
):
    """
    Persist an attachment.

    With contentBase64 the server stores the bytes itself (PUTting them to
    uploadUrl when one is given); otherwise the body is metadata for bytes the
    client already uploaded.
    """
    if request.carries_bytes:
        return await service.upload(
            filename=request.filename,
            content_base64=request.content_base64,
            content_type=request.content_type,
            job_id=request.job_id,
            upload_url=request.upload_url,
            storage_key=request.storage_key,
        )
    return await service.persist(
        filename=request.filename,
        storage_key=request.storage_key,
        url=request.url,
        size=request.size,
        content_type=request.content_type,
        job_id=request.job_id,
        replace_files=request.replace_files,
    )


@router.get("/{attachment_id}", response_model=None)
async def get_upload(
    attachment_id: str,
    service: UploadService = Depends(get_upload_service),
) -> Union[FileResponse, RedirectResponse]:
    """
    Serve the bytes: local file, signed GET redirect, or stored URL redirect.
    """
    target = await service.resolve_download(attachment_id)
    if target.is_local:
        attachment = target.attachment
        return FileResponse(
            target.path,
            media_type=attachment.content_type or "application/octet-stream",
            headers={"Content-Disposition": inline_disposition(attachment.filename)},
        )
    return RedirectResponse(target.redirect_url, status_code=status.HTTP_302_FOUND)


@router.delete("/{attachment_id}", response_model=DeletedAttachmentResponse)
async def delete_upload(
    attachment_id: str,
    service: UploadService = Depends(get_upload_service),
):
    """
    Delete the stored bytes (best-effort), then the record.

    Repeating the delete is safe: the service reports "nothing to do" and
    this route answers 404, the same as for an id that never existed.
    Bytes still referenced by another attachment are kept.
    """
    attachment = await service.delete_attachment(attachment_id)
    if attachment is None:
        raise AttachmentNotFoundError(f"Attachment {attachment_id} not found")
    return DeletedAttachmentResponse(id=attachment.id, owner_id=attachment.owner_id)

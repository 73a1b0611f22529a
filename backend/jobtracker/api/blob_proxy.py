"""
Blob proxy endpoint.

Streams object store bytes through the server so the bucket can stay private.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from jobtracker.api.dependencies import get_upload_service
from jobtracker.api.uploads import inline_disposition
from jobtracker.services.upload_service import UploadService

router = APIRouter()


@router.get("")
async def blob_proxy(
    key: Optional[str] = Query(None, description="Storage key"),
    k: Optional[str] = Query(None, description="Short form of key"),
    service: UploadService = Depends(get_upload_service),
):
    """
    Stream the object stored under key.

    404 when the object does not exist, 502 when the fetch fails.
    """
    stream, content_type, filename = await service.open_blob(key or k)
    headers = {"Content-Disposition": inline_disposition(filename)}
    if stream.content_length is not None:
        headers["Content-Length"] = str(stream.content_length)
    return StreamingResponse(stream.chunks, media_type=content_type, headers=headers)

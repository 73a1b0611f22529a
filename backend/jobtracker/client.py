"""
Client side of the two-phase attachment upload.

Drives the same sequence the dashboard runs in the browser:

1. POST /api/uploads/create to negotiate a target
2. either PUT the bytes to the signed URL (same origin), or send them base64
   encoded to POST /api/uploads and let the server relay or save them
3. after a direct PUT, POST the metadata to /api/uploads

Cross-origin signed URLs are never PUT from the client; a failed server relay
is surfaced instead of retried as a client PUT.
"""
import base64
import logging
from typing import Any, Dict, Optional

import httpx

from jobtracker.services.upload_service import TransferRoute, choose_transfer_route
from jobtracker.storage.gateway import canonicalize_signed_upload, strip_query

logger = logging.getLogger(__name__)


class UploadFailedError(Exception):
    """A step of the upload protocol returned a non-success status."""

    def __init__(self, step: str, status_code: int, body: str = ""):
        self.step = step
        self.status_code = status_code
        self.body = body
        super().__init__(f"{step} failed: {status_code} {body}".strip())


def _raise_for_status(step: str, response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        body = response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        body = "<no body>"
    raise UploadFailedError(step, response.status_code, body[:500])


class AttachmentUploader:
    """
    Upload attachments to a job tracker API.

    Args:
        http: Client whose base_url points at the API host
        page_origin: Origin the caller runs on; signed URLs on other origins
            are relayed through the server. None means same-origin rules do
            not apply (non-browser caller).
        api_prefix: Mount point of the API routes
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        page_origin: Optional[str] = None,
        api_prefix: str = "/api",
    ):
        self.http = http
        self.page_origin = page_origin
        self.api_prefix = api_prefix.rstrip("/")

    def _path(self, path: str) -> str:
        return f"{self.api_prefix}{path}"

    async def negotiate(self, filename: str, content_type: Optional[str] = None) -> Dict[str, Any]:
        response = await self.http.post(
            self._path("/uploads/create"),
            json={"filename": filename, "contentType": content_type},
        )
        _raise_for_status("create upload URL", response)
        return response.json()

    async def upload(
        self,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Upload bytes and record the attachment.

        Returns:
            The attachment record returned by the API

        Raises:
            UploadFailedError: Any protocol step failed
        """
        payload = await self.negotiate(filename, content_type)
        signed = canonicalize_signed_upload(payload, filename)
        route = choose_transfer_route(signed, self.page_origin)
        logger.debug(f"Upload route for {filename}: {route.value}")

        if route is TransferRoute.SERVER_SAVE:
            return await self._send_to_server(filename, data, content_type, job_id)

        if route is TransferRoute.SERVER_RELAY:
            return await self._send_to_server(
                filename, data, content_type, job_id,
                upload_url=signed.upload_url, storage_key=signed.storage_key,
            )

        headers = {"Content-Type": content_type} if content_type else {}
        put_response = await self.http.put(signed.upload_url, content=data, headers=headers)
        _raise_for_status("upload PUT", put_response)

        response = await self.http.post(
            self._path("/uploads"),
            json={
                "jobId": job_id,
                "filename": filename,
                "url": signed.url or strip_query(signed.upload_url),
                "storageKey": signed.storage_key,
                "size": len(data),
                "contentType": content_type,
            },
        )
        _raise_for_status("persist attachment", response)
        return response.json()

    async def _send_to_server(
        self,
        filename: str,
        data: bytes,
        content_type: Optional[str],
        job_id: Optional[str],
        upload_url: Optional[str] = None,
        storage_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {
            "jobId": job_id,
            "filename": filename,
            "contentBase64": base64.b64encode(data).decode("ascii"),
            "contentType": content_type,
        }
        if upload_url:
            body["uploadUrl"] = upload_url
            body["storageKey"] = storage_key
        response = await self.http.post(self._path("/uploads"), json=body)
        _raise_for_status("server-side upload", response)
        return response.json()

    async def delete(self, attachment_id: str) -> bool:
        """Returns False if the attachment was already gone."""
        response = await self.http.delete(self._path(f"/uploads/{attachment_id}"))
        if response.status_code == 404:
            return False
        _raise_for_status("delete attachment", response)
        return True

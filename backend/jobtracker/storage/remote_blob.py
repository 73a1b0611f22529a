"""
Hosted blob service client.

The provider issues signed upload URLs through a token-authenticated "create"
call and expects a raw PUT of the bytes to that URL. Deletion is by key with
the same token. Responses vary between providers, so create() returns the raw
JSON body and the gateway canonicalizes it.
"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from jobtracker.storage.errors import SignedUrlRejectedError, UpstreamStorageError

logger = logging.getLogger(__name__)

BACKEND = "remoteblob"


def _body_excerpt(response: httpx.Response, limit: int = 200) -> str:
    try:
        text = response.text
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return "<no body>"
    return text[:limit] if text else "<no body>"


def _json_or_none(response: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class RemoteBlobClient:
    """Thin async wrapper around the blob service HTTP API."""

    def __init__(self, http: httpx.AsyncClient, api_url: str, token: Optional[str] = None):
        self._http = http
        self._api_url = api_url.rstrip("/")
        self._token = token

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    def _auth_headers(self) -> Dict[str, str]:
        return {"authorization": f"Bearer {self._token}"}

    async def create_upload_url(self, name: str) -> Dict[str, Any]:
        """
        Ask the provider for a signed upload URL.

        Returns:
            The provider's JSON response (field names vary)

        Raises:
            UpstreamStorageError: On transport failure or non-2xx response
        """
        if not self._token:
            raise UpstreamStorageError("No read/write token for remote blob service", BACKEND)
        try:
            response = await self._http.post(
                self._api_url,
                json={"name": name},
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            raise UpstreamStorageError(f"Blob create request failed: {e}", BACKEND) from e

        if response.is_error:
            raise UpstreamStorageError(
                f"Blob create failed: {response.status_code} {_body_excerpt(response)}",
                BACKEND,
                response.status_code,
            )
        return _json_or_none(response) or {}

    async def put(self, upload_url: str, data: bytes, content_type: str) -> Optional[Dict[str, Any]]:
        """
        PUT raw bytes to a signed URL.

        Returns:
            The JSON body of the response if there is one, else None

        Raises:
            SignedUrlRejectedError: If the URL is expired or unauthorized (401/403)
            UpstreamStorageError: On transport failure or any other non-2xx response
        """
        headers = {
            "content-type": content_type or "application/octet-stream",
            "content-length": str(len(data)),
        }
        try:
            response = await self._http.put(upload_url, content=data, headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamStorageError(f"PUT to upload URL failed: {e}", BACKEND) from e

        if response.status_code in (401, 403):
            raise SignedUrlRejectedError(
                f"Upload URL rejected ({response.status_code}): expired or unauthorized",
                BACKEND,
                response.status_code,
            )
        if response.is_error:
            raise UpstreamStorageError(
                f"Remote blob upload failed: {response.status_code} {_body_excerpt(response)}",
                BACKEND,
                response.status_code,
            )
        return _json_or_none(response)

    async def delete(self, key: str) -> bool:
        """
        Delete a blob by key.

        Returns:
            True if the provider confirmed the delete

        Raises:
            UpstreamStorageError: On transport failure or non-2xx response
        """
        if not self._token:
            return False
        try:
            response = await self._http.delete(
                f"{self._api_url}/{quote(key, safe='')}",
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            raise UpstreamStorageError(f"Blob delete request failed: {e}", BACKEND) from e

        if response.is_error:
            raise UpstreamStorageError(
                f"Blob delete failed: {response.status_code} {_body_excerpt(response)}",
                BACKEND,
                response.status_code,
            )
        return True

"""
Blob gateway: single entry point for attachment bytes.

Hides which physical backend stores the bytes. The backend is picked per call
from the current settings, in priority order:

    1. objectstore  - R2 / S3 credentials (access key, secret, bucket) present
    2. remoteblob   - remote blob read/write token present
    3. local        - files under the uploads directory

An explicit override (argument or BLOB_PROVIDER) wins over auto-detection.

Fallback chain: when the selected remote backend is unconfigured or fails, the
gateway degrades instead of raising, unless ENFORCE_REMOTE_UPLOADS is set.
Signed-URL negotiation degrades to a public-URL guess when a public prefix is
configured, then to the local uploads path. Saves always degrade to local
disk so accepted bytes are never dropped. Degradation is reported through the
Degraded result type and a `fallback: true` log record.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Union
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from jobtracker.config import Settings, get_settings
from jobtracker.storage.errors import (
    StorageError,
    StorageNotConfiguredError,
    SignedUrlRejectedError,
    UnsupportedOperationError,
    UploadRelayError,
    UpstreamStorageError,
)
from jobtracker.storage.local_store import LocalFileStore, safe_filename
from jobtracker.storage.outcomes import (
    Degraded,
    Failed,
    ObjectStream,
    Saved,
    SignedDownload,
    SignedUpload,
    StorageBackend,
    StorageResult,
    StoredObject,
)
from jobtracker.storage.r2_client import R2Client
from jobtracker.storage.remote_blob import RemoteBlobClient
from jobtracker.utils.logging import log_blob_failure, log_blob_fallback
from jobtracker.utils.metrics import blob_delete_failures_total, blob_operations_total

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"

BACKEND_ALIASES = {
    "objectstore": StorageBackend.OBJECTSTORE,
    "r2": StorageBackend.OBJECTSTORE,
    "s3": StorageBackend.OBJECTSTORE,
    "remoteblob": StorageBackend.REMOTEBLOB,
    "remote": StorageBackend.REMOTEBLOB,
    "vercel": StorageBackend.REMOTEBLOB,
    "local": StorageBackend.LOCAL,
}

# Provider field names for the same concepts, in preference order
UPLOAD_URL_FIELDS = ("uploadURL", "uploadUrl", "signedUrl", "signedURL", "upload_url")
PUBLIC_URL_FIELDS = ("url", "publicUrl", "publicURL", "downloadUrl")
KEY_FIELDS = ("key", "storageKey", "pathname", "name")


def _first(payload: Mapping[str, Any], fields) -> Optional[str]:
    for field in fields:
        value = payload.get(field)
        if value:
            return str(value)
    return None


def canonicalize_signed_upload(payload: Optional[Mapping[str, Any]], default_key: str) -> SignedUpload:
    """Collapse a provider's create-upload response into a SignedUpload."""
    payload = payload or {}
    return SignedUpload(
        upload_url=_first(payload, UPLOAD_URL_FIELDS),
        url=_first(payload, PUBLIC_URL_FIELDS),
        storage_key=_first(payload, KEY_FIELDS) or default_key,
    )


def join_public_url(prefix: str, key: str) -> str:
    return f"{prefix.rstrip('/')}/{quote(key)}"


def strip_query(url: str) -> str:
    """Drop the query string (signature) and fragment from a URL."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def generate_object_key(filename: str) -> str:
    """Collision-free object key: attachments/<random>/<filename>."""
    return f"attachments/{uuid.uuid4().hex}/{safe_filename(filename)}"


class BlobGateway:
    """
    Unified storage facade over the local, object store and remote blob backends.

    Args:
        settings_provider: Callable returning current Settings; invoked per operation
        http_transport: Optional httpx transport for remote blob and relay calls
        r2_client_factory: Builds an R2Client from a Settings snapshot
    """

    def __init__(
        self,
        settings_provider: Callable[[], Settings] = get_settings,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        r2_client_factory: Callable[[Settings], R2Client] = R2Client,
    ):
        self._settings_provider = settings_provider
        self._http_transport = http_transport
        self._r2_client_factory = r2_client_factory

    # ------------------------------------------------------------------
    # Backend selection
    # ------------------------------------------------------------------

    def settings(self) -> Settings:
        return self._settings_provider()

    def select_backend(
        self,
        override: Optional[Union[str, StorageBackend]] = None,
        settings: Optional[Settings] = None,
    ) -> StorageBackend:
        """
        Pick the backend for one call.

        Raises:
            ValueError: If the override names an unknown backend
        """
        settings = settings or self.settings()
        choice = override or settings.blob_provider
        if choice:
            name = choice.value if isinstance(choice, StorageBackend) else str(choice).strip().lower()
            if name not in BACKEND_ALIASES:
                raise ValueError(f"Unknown storage backend: {choice}")
            return BACKEND_ALIASES[name]
        if settings.has_object_store_credentials:
            return StorageBackend.OBJECTSTORE
        if settings.has_remote_blob_token:
            return StorageBackend.REMOTEBLOB
        return StorageBackend.LOCAL

    def local_store(self, settings: Optional[Settings] = None) -> LocalFileStore:
        settings = settings or self.settings()
        return LocalFileStore(settings.uploads_dir, settings.uploads_url_prefix)

    @asynccontextmanager
    async def _remote_blob(self, settings: Settings) -> AsyncIterator[RemoteBlobClient]:
        async with httpx.AsyncClient(
            transport=self._http_transport,
            timeout=settings.http_timeout_seconds,
        ) as http:
            yield RemoteBlobClient(http, settings.blob_api_url, settings.blob_read_write_token)

    def _public_prefix(self, settings: Settings, backend: StorageBackend) -> Optional[str]:
        if backend is StorageBackend.OBJECTSTORE:
            return settings.r2_public_url_prefix
        if backend is StorageBackend.REMOTEBLOB:
            return settings.blob_public_url_prefix
        return None

    def _require_local_allowed(
        self,
        settings: Settings,
        override: Optional[Union[str, StorageBackend]],
        operation: str,
    ) -> None:
        """Local disk is only a failure under enforcement when nothing remote is configured."""
        if settings.enforce_remote_uploads and not (override or settings.blob_provider):
            blob_operations_total.labels(backend="local", operation=operation, outcome="failed").inc()
            raise StorageNotConfiguredError(
                "Remote uploads are enforced but no remote storage is configured",
                StorageBackend.LOCAL.value,
            )

    @staticmethod
    def relay_hosts(settings: Settings) -> set:
        """Hosts a relayed PUT may target: the ones this gateway hands out signed URLs for."""
        hosts = {host.strip().lower() for host in settings.relay_allowed_hosts if host.strip()}
        for url in (settings.resolved_r2_endpoint, settings.blob_upload_url):
            host = urlsplit(url).hostname if url else None
            if host:
                hosts.add(host.lower())
        return hosts

    def is_relay_target(self, upload_url: str, settings: Optional[Settings] = None) -> bool:
        settings = settings or self.settings()
        parts = urlsplit(upload_url)
        host = (parts.hostname or "").lower()
        if parts.scheme not in ("http", "https") or not host:
            return False
        return any(host == allowed or host.endswith("." + allowed) for allowed in self.relay_hosts(settings))

    @staticmethod
    def _record(result, operation: str):
        outcome = "degraded" if result.degraded else "saved"
        blob_operations_total.labels(
            backend=result.backend.value, operation=operation, outcome=outcome
        ).inc()
        return result

    @staticmethod
    def _enforce(settings: Settings, failed: Failed, operation: str) -> None:
        if not settings.enforce_remote_uploads:
            return
        blob_operations_total.labels(
            backend=failed.backend.value, operation=operation, outcome="failed"
        ).inc()
        log_blob_failure(logger, failed.backend.value, operation, failed.reason)
        failed.raise_error()

    # ------------------------------------------------------------------
    # save
    # ------------------------------------------------------------------

    async def save(
        self,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
        backend: Optional[Union[str, StorageBackend]] = None,
        upload_url: Optional[str] = None,
    ) -> StorageResult[StoredObject]:
        """
        Store bytes on the active backend.

        Args:
            filename: Client-supplied name; reduced to a single path segment
            data: Payload bytes
            content_type: MIME type passed through to the backend
            backend: Optional explicit backend
            upload_url: Signed upload URL to use for the remote blob backend

        Returns:
            Saved, or Degraded when the bytes went to local disk instead

        Raises:
            ValueError: Missing filename or bytes (never falls back)
            StorageError: Only when remote uploads are enforced
        """
        if data is None:
            raise ValueError("No bytes to store")
        name = safe_filename(filename)
        content_type = content_type or DEFAULT_CONTENT_TYPE
        settings = self.settings()
        selected = self.select_backend(backend, settings)

        if selected is StorageBackend.OBJECTSTORE:
            attempt = await self._save_object_store(settings, name, data, content_type)
        elif selected is StorageBackend.REMOTEBLOB:
            attempt = await self._save_remote_blob(settings, name, data, content_type, upload_url)
        else:
            self._require_local_allowed(settings, backend, "save")
            stored = await asyncio.to_thread(self.local_store(settings).save, name, data)
            return self._record(Saved(stored, StorageBackend.LOCAL), "save")

        if isinstance(attempt, Failed):
            self._enforce(settings, attempt, "save")
            stored = await asyncio.to_thread(self.local_store(settings).save, name, data)
            log_blob_fallback(logger, attempt.backend.value, "save", attempt.reason, fallback_to="local")
            return self._record(Degraded(stored, StorageBackend.LOCAL, attempt.reason), "save")

        return self._record(Saved(attempt, selected), "save")

    async def _save_object_store(
        self, settings: Settings, name: str, data: bytes, content_type: str
    ) -> Union[StoredObject, Failed]:
        r2 = self._r2_client_factory(settings)
        if not r2.is_configured:
            return Failed(
                StorageNotConfiguredError("R2 storage not configured", StorageBackend.OBJECTSTORE.value),
                StorageBackend.OBJECTSTORE,
            )
        key = generate_object_key(name)
        try:
            await asyncio.to_thread(r2.put_object, key, data, content_type)
        except StorageError as e:
            return Failed(e, StorageBackend.OBJECTSTORE)
        return StoredObject(url=r2.public_url(key), storage_key=key, size=len(data))

    async def _save_remote_blob(
        self,
        settings: Settings,
        name: str,
        data: bytes,
        content_type: str,
        upload_url: Optional[str],
    ) -> Union[StoredObject, Failed]:
        key = generate_object_key(name)
        target = upload_url or settings.blob_upload_url
        async with self._remote_blob(settings) as remote:
            try:
                if not target:
                    if not remote.has_token:
                        raise StorageNotConfiguredError(
                            "No upload URL or read/write token for remote blob uploads",
                            StorageBackend.REMOTEBLOB.value,
                        )
                    signed = canonicalize_signed_upload(await remote.create_upload_url(key), key)
                    if not signed.upload_url:
                        raise UpstreamStorageError(
                            "Blob create response did not contain an upload URL",
                            StorageBackend.REMOTEBLOB.value,
                        )
                    target, key = signed.upload_url, signed.storage_key
                body = await remote.put(target, data, content_type)
            except StorageError as e:
                return Failed(e, StorageBackend.REMOTEBLOB)

        return self._stored_from_put(
            body, key, target, len(data), settings.blob_public_url_prefix
        )

    @staticmethod
    def _stored_from_put(
        body: Optional[Mapping[str, Any]],
        key: str,
        upload_url: str,
        size: int,
        public_prefix: Optional[str],
    ) -> StoredObject:
        """Derive the stored locator from a PUT response, a public prefix or the URL itself."""
        body = body or {}
        key = _first(body, ("key", "pathname")) or key
        url = body.get("url")
        if not url:
            url = join_public_url(public_prefix, key) if public_prefix else strip_query(upload_url)
        return StoredObject(url=url, storage_key=key, size=size)

    # ------------------------------------------------------------------
    # Signed URLs
    # ------------------------------------------------------------------

    async def create_signed_upload_url(
        self,
        filename: str,
        content_type: Optional[str] = None,
        backend: Optional[Union[str, StorageBackend]] = None,
    ) -> StorageResult[SignedUpload]:
        """
        Negotiate an upload target (phase 1).

        Returns:
            Saved/Degraded SignedUpload. upload_url is None when the caller
            must POST the bytes to the server instead of PUTting them.

        Raises:
            ValueError: Missing filename
            StorageError: Only when remote uploads are enforced
        """
        name = safe_filename(filename)
        content_type = content_type or DEFAULT_CONTENT_TYPE
        settings = self.settings()
        selected = self.select_backend(backend, settings)
        operation = "create_signed_upload_url"

        if selected is StorageBackend.OBJECTSTORE:
            attempt = await self._sign_object_store_upload(settings, name, content_type)
        elif selected is StorageBackend.REMOTEBLOB:
            attempt = await self._sign_remote_blob_upload(settings, name)
        else:
            self._require_local_allowed(settings, backend, operation)
            local = self.local_store(settings)
            signed = SignedUpload(upload_url=None, url=local.url_for(name), storage_key=local.key_for(name))
            return self._record(Saved(signed, StorageBackend.LOCAL), operation)

        if isinstance(attempt, Failed):
            self._enforce(settings, attempt, operation)
            return self._record(self._degrade_signed_upload(settings, attempt, name), operation)

        return self._record(Saved(attempt, selected), operation)

    async def _sign_object_store_upload(
        self, settings: Settings, name: str, content_type: str
    ) -> Union[SignedUpload, Failed]:
        r2 = self._r2_client_factory(settings)
        if not r2.is_configured:
            return Failed(
                StorageNotConfiguredError("R2 storage not configured", StorageBackend.OBJECTSTORE.value),
                StorageBackend.OBJECTSTORE,
            )
        key = generate_object_key(name)
        try:
            upload_url = await asyncio.to_thread(r2.generate_presigned_upload_url, key, content_type)
        except StorageError as e:
            return Failed(e, StorageBackend.OBJECTSTORE)
        return SignedUpload(upload_url=upload_url, url=r2.public_url(key), storage_key=key)

    async def _sign_remote_blob_upload(self, settings: Settings, name: str) -> Union[SignedUpload, Failed]:
        if not settings.has_remote_blob_token:
            return Failed(
                StorageNotConfiguredError(
                    "No read/write token available to create signed upload URL",
                    StorageBackend.REMOTEBLOB.value,
                ),
                StorageBackend.REMOTEBLOB,
            )
        key = generate_object_key(name)
        async with self._remote_blob(settings) as remote:
            try:
                signed = canonicalize_signed_upload(await remote.create_upload_url(key), key)
            except StorageError as e:
                return Failed(e, StorageBackend.REMOTEBLOB)
        if not signed.upload_url:
            return Failed(
                UpstreamStorageError(
                    "Blob create response did not contain an upload URL",
                    StorageBackend.REMOTEBLOB.value,
                ),
                StorageBackend.REMOTEBLOB,
            )
        return signed

    def _degrade_signed_upload(self, settings: Settings, failed: Failed, name: str) -> Degraded[SignedUpload]:
        prefix = self._public_prefix(settings, failed.backend)
        if prefix:
            log_blob_fallback(
                logger, failed.backend.value, "create_signed_upload_url", failed.reason,
                fallback_to="public_url",
            )
            signed = SignedUpload(upload_url=None, url=join_public_url(prefix, name), storage_key=name)
            return Degraded(signed, failed.backend, failed.reason)

        log_blob_fallback(
            logger, failed.backend.value, "create_signed_upload_url", failed.reason,
            fallback_to="local",
        )
        local = self.local_store(settings)
        signed = SignedUpload(upload_url=None, url=local.url_for(name), storage_key=local.key_for(name))
        return Degraded(signed, StorageBackend.LOCAL, failed.reason)

    async def create_signed_download_url(
        self,
        storage_key: str,
        content_type: Optional[str] = None,
    ) -> Optional[SignedDownload]:
        """
        Presigned GET for an object store key.

        Returns:
            SignedDownload, or None when the active backend has no signed reads
            (use the stored url or stream through get_object_stream instead)
        """
        if not storage_key:
            return None
        settings = self.settings()
        if self.select_backend(settings=settings) is not StorageBackend.OBJECTSTORE:
            return None
        r2 = self._r2_client_factory(settings)
        if not r2.is_configured:
            return None
        try:
            url = await asyncio.to_thread(r2.get_presigned_read_url, storage_key, None, content_type)
        except StorageError as e:
            log_blob_failure(logger, StorageBackend.OBJECTSTORE.value, "create_signed_download_url", str(e))
            public = r2.public_url(storage_key)
            return SignedDownload(url=public, storage_key=storage_key) if public else None
        return SignedDownload(url=url, storage_key=storage_key)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_object_stream(self, storage_key: str) -> ObjectStream:
        """
        Stream an object's bytes from the object store.

        Raises:
            UnsupportedOperationError: Active backend is not the object store
            BlobNotFoundError: No object for the key
            UpstreamStorageError: Fetch failed
        """
        settings = self.settings()
        selected = self.select_backend(settings=settings)
        if selected is not StorageBackend.OBJECTSTORE:
            raise UnsupportedOperationError(
                f"Streaming is only available for the object store (active: {selected.value})",
                selected.value,
            )
        r2 = self._r2_client_factory(settings)
        response = await asyncio.to_thread(r2.get_object, storage_key)
        body = response["Body"]

        async def chunks() -> AsyncIterator[bytes]:
            try:
                while True:
                    chunk = await asyncio.to_thread(r2.read_chunk, body)
                    if not chunk:
                        break
                    yield chunk
            finally:
                body.close()

        return ObjectStream(
            chunks=chunks(),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            content_length=response.get("ContentLength"),
        )

    # ------------------------------------------------------------------
    # Server-side relay
    # ------------------------------------------------------------------

    async def relay_upload(
        self,
        upload_url: str,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
        storage_key: Optional[str] = None,
    ) -> Saved[StoredObject]:
        """
        PUT bytes to a caller-supplied signed URL from the server.

        Used when the browser cannot PUT cross-origin. Failures always raise;
        there is no fallback because the caller explicitly chose this target.
        Only hosts from relay_hosts are accepted.

        Raises:
            ValueError: No bytes, or the URL is not an allowed upload target
            SignedUrlRejectedError: URL expired or unauthorized
            UploadRelayError: Any other PUT failure
        """
        if data is None:
            raise ValueError("No bytes to store")
        name = safe_filename(filename)
        content_type = content_type or DEFAULT_CONTENT_TYPE
        settings = self.settings()
        if not self.is_relay_target(upload_url, settings):
            blob_operations_total.labels(backend="unknown", operation="relay", outcome="failed").inc()
            logger.warning(
                f"Refused relay to {urlsplit(upload_url).hostname}",
                extra={"event": "relay_refused", "upload_host": urlsplit(upload_url).hostname},
            )
            raise ValueError("uploadUrl is not an allowed upload target")
        selected = self.select_backend(settings=settings)
        backend = StorageBackend.OBJECTSTORE if selected is StorageBackend.OBJECTSTORE else StorageBackend.REMOTEBLOB

        async with self._remote_blob(settings) as remote:
            try:
                body = await remote.put(upload_url, data, content_type)
            except SignedUrlRejectedError:
                blob_operations_total.labels(backend=backend.value, operation="relay", outcome="failed").inc()
                raise
            except UpstreamStorageError as e:
                blob_operations_total.labels(backend=backend.value, operation="relay", outcome="failed").inc()
                raise UploadRelayError(str(e), backend.value, e.status_code) from e

        if backend is StorageBackend.OBJECTSTORE:
            r2 = self._r2_client_factory(settings)
            key = storage_key or r2.key_from_url(upload_url) or name
            stored = StoredObject(url=r2.public_url(key), storage_key=key, size=len(data))
        else:
            stored = self._stored_from_put(
                body, storage_key or name, upload_url, len(data), settings.blob_public_url_prefix
            )
        return self._record(Saved(stored, backend), "relay")

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    async def delete(self, storage_key: Optional[str] = None, url: Optional[str] = None) -> bool:
        """
        Best-effort removal of stored bytes.

        Tries the object store (only when the key exists there), then the
        remote blob service, then the local uploads directory. Failures are
        logged and counted, never raised.

        Returns:
            True only if some backend actually deleted something
        """
        settings = self.settings()
        local = self.local_store(settings)
        is_local = local.owns_url(url) or local.owns_key(storage_key)

        if storage_key and not is_local and settings.has_object_store_credentials:
            r2 = self._r2_client_factory(settings)
            if r2.is_configured:
                # S3 deletes succeed for missing keys, so check first
                try:
                    if await asyncio.to_thread(r2.check_object_exists, storage_key):
                        await asyncio.to_thread(r2.delete_object, storage_key)
                        return True
                except StorageError as e:
                    self._log_delete_failure(StorageBackend.OBJECTSTORE, e)

        if storage_key and not is_local and settings.has_remote_blob_token:
            async with self._remote_blob(settings) as remote:
                try:
                    if await remote.delete(storage_key):
                        return True
                except StorageError as e:
                    self._log_delete_failure(StorageBackend.REMOTEBLOB, e)

        if is_local:
            try:
                return await asyncio.to_thread(local.delete, url, storage_key)
            except OSError as e:
                self._log_delete_failure(StorageBackend.LOCAL, e)

        return False

    @staticmethod
    def _log_delete_failure(backend: StorageBackend, error: Exception) -> None:
        blob_delete_failures_total.labels(backend=backend.value).inc()
        log_blob_failure(logger, backend.value, "delete", str(error))

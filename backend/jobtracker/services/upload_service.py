"""
Upload orchestration.

Coordinates getting attachment bytes into a storage backend and a matching
metadata row into the attachments table.

Flow:
1. negotiate      - caller asks for an upload target (signed URL or none)
2a. direct PUT    - caller PUTs bytes to the signed URL, then calls persist
2b. server relay  - caller sends base64 bytes; the server either saves them
                    through the gateway or, when the caller passes the signed
                    uploadUrl (cross-origin case), PUTs them itself
3. persist        - insert the attachment row and merge it into the owning
                    job's metadata.files list

Bytes written without a matching row (or the reverse) are not reconciled.
"""
import base64
import binascii
import enum
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from jobtracker.models.attachment import Attachment
from jobtracker.models.job import Job
from jobtracker.repositories.attachment_repository import AttachmentRepository
from jobtracker.repositories.job_repository import JobRepository
from jobtracker.storage.gateway import BlobGateway
from jobtracker.storage.outcomes import ObjectStream, SignedUpload, StorageResult
from jobtracker.utils.logging import log_attachment_deleted, log_attachment_stored, log_blob_failure
from jobtracker.utils.metrics import (
    attachments_created_total,
    attachments_deleted_total,
    blob_delete_failures_total,
)

logger = logging.getLogger(__name__)


class AttachmentValidationError(ValueError):
    """A required field is missing or malformed."""


class AttachmentNotFoundError(LookupError):
    """Unknown attachment, owner, or missing bytes."""


class TransferRoute(str, enum.Enum):
    """How the caller should move bytes after negotiation."""
    DIRECT_PUT = "direct_put"      # PUT straight to the signed URL
    SERVER_RELAY = "server_relay"  # send bytes + uploadUrl to the server, which PUTs
    SERVER_SAVE = "server_save"    # send bytes to the server, which saves via the gateway


def origin_of(url: Optional[str]) -> Optional[str]:
    """scheme://host[:port] of an absolute URL, lowercased; None for relative URLs."""
    if not url:
        return None
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def choose_transfer_route(negotiation: SignedUpload, page_origin: Optional[str] = None) -> TransferRoute:
    """
    Decide phase 2 from a phase 1 result.

    A signed URL on a different origin than the page goes through the server,
    since object stores commonly reject cross-origin browser PUTs.
    """
    if not negotiation.upload_url:
        return TransferRoute.SERVER_SAVE
    upload_origin = origin_of(negotiation.upload_url)
    page = origin_of(page_origin)
    if upload_origin and page and upload_origin != page:
        return TransferRoute.SERVER_RELAY
    return TransferRoute.DIRECT_PUT


def decode_content(content_base64: Optional[str]) -> bytes:
    """
    Decode a base64 payload.

    A data: URL prefix and line wrapping or other whitespace are tolerated.

    Raises:
        AttachmentValidationError: Missing or invalid base64
    """
    if content_base64 is None or content_base64 == "":
        raise AttachmentValidationError("contentBase64 required")
    payload = content_base64.strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    payload = "".join(payload.split())
    if not payload:
        raise AttachmentValidationError("contentBase64 required")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AttachmentValidationError(f"contentBase64 is not valid base64: {e}") from e


@dataclass(frozen=True)
class DownloadTarget:
    """Where GET /uploads/{id} should send the client."""
    attachment: Attachment
    path: Optional[Path] = None
    redirect_url: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.path is not None


class UploadService:
    """Two-phase upload protocol plus attachment reads and deletes."""

    def __init__(
        self,
        gateway: BlobGateway,
        attachments: AttachmentRepository,
        jobs: JobRepository,
    ):
        self.gateway = gateway
        self.attachments = attachments
        self.jobs = jobs

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    async def negotiate(self, filename: Optional[str], content_type: Optional[str] = None) -> StorageResult[SignedUpload]:
        """
        Request an upload target.

        Raises:
            AttachmentValidationError: Missing filename
            StorageError: Remote failure while remote uploads are enforced
        """
        if not filename:
            raise AttachmentValidationError("filename required")
        try:
            return await self.gateway.create_signed_upload_url(filename, content_type)
        except ValueError as e:
            raise AttachmentValidationError(str(e)) from e

    # ------------------------------------------------------------------
    # Phase 2b + 3
    # ------------------------------------------------------------------

    async def upload(
        self,
        filename: Optional[str],
        content_base64: Optional[str],
        content_type: Optional[str] = None,
        job_id: Optional[str] = None,
        upload_url: Optional[str] = None,
        storage_key: Optional[str] = None,
    ) -> Attachment:
        """
        Server-side transfer followed by metadata persist.

        With upload_url the server PUTs the bytes to that signed URL and any
        failure is raised; without it the bytes go through BlobGateway.save.

        Raises:
            AttachmentValidationError: Missing filename or bytes
            AttachmentNotFoundError: job_id names an unknown job
            StorageError: Relay failure, or save failure under enforcement
        """
        start_time = time.time()
        if not filename:
            raise AttachmentValidationError("filename and contentBase64 required")
        data = decode_content(content_base64)
        job = await self._require_job(job_id)

        try:
            if upload_url:
                result = await self.gateway.relay_upload(
                    upload_url, filename, data, content_type, storage_key=storage_key
                )
            else:
                result = await self.gateway.save(filename, data, content_type)
        except ValueError as e:
            raise AttachmentValidationError(str(e)) from e

        stored = result.value
        return await self._persist(
            job=job,
            filename=filename,
            storage_key=stored.storage_key,
            url=stored.url,
            size=stored.size,
            content_type=content_type,
            start_time=start_time,
            backend=result.backend.value,
        )

    # ------------------------------------------------------------------
    # Phase 3
    # ------------------------------------------------------------------

    async def persist(
        self,
        filename: Optional[str],
        storage_key: Optional[str],
        url: Optional[str],
        size: Optional[int],
        content_type: Optional[str] = None,
        job_id: Optional[str] = None,
        replace_files: bool = False,
    ) -> Attachment:
        """
        Record an attachment whose bytes the caller already uploaded.

        Args:
            replace_files: Replace the owner's files list instead of merging

        Raises:
            AttachmentValidationError: Missing filename or locator
            AttachmentNotFoundError: job_id names an unknown job
        """
        if not filename:
            raise AttachmentValidationError("filename required")
        if not storage_key and not url:
            raise AttachmentValidationError("storageKey or url required")
        if size is not None and size < 0:
            raise AttachmentValidationError("size must not be negative")
        job = await self._require_job(job_id)
        return await self._persist(
            job=job,
            filename=filename,
            storage_key=storage_key or url,
            url=url,
            size=size,
            content_type=content_type,
            replace_files=replace_files,
        )

    async def _require_job(self, job_id: Optional[str]) -> Optional[Job]:
        if not job_id:
            return None
        job = await self.jobs.get(job_id)
        if job is None:
            raise AttachmentNotFoundError(f"Job {job_id} not found")
        return job

    async def _persist(
        self,
        job: Optional[Job],
        filename: str,
        storage_key: Optional[str],
        url: Optional[str],
        size: Optional[int],
        content_type: Optional[str],
        replace_files: bool = False,
        start_time: Optional[float] = None,
        backend: Optional[str] = None,
    ) -> Attachment:
        start_time = start_time or time.time()
        attachment = await self.attachments.insert(
            filename=filename,
            storage_key=storage_key,
            url=url,
            size=size,
            content_type=content_type,
            owner_id=job.id if job else None,
        )
        if job is not None:
            await self._sync_owner_files(job.id, replace_with=attachment if replace_files else None)

        attachments_created_total.inc()
        log_attachment_stored(
            logger,
            attachment_id=attachment.id,
            owner_id=attachment.owner_id,
            storage_key=attachment.storage_key,
            size=attachment.size,
            duration_ms=(time.time() - start_time) * 1000,
            backend=backend,
        )
        return attachment

    async def _sync_owner_files(self, job_id: str, replace_with: Optional[Attachment] = None) -> None:
        """
        Merge the owner's attachment rows into job metadata.files.

        Existing entries keep their position and fields; rows not yet listed
        are appended in insertion order.
        """
        job = await self.jobs.get(job_id)
        if job is None:
            return
        if replace_with is not None:
            files = [replace_with.to_file_entry()]
        else:
            files = job.files
            listed = {entry.get("id") for entry in files if isinstance(entry, dict)}
            for attachment in await self.attachments.list_by_owner(job_id):
                if attachment.id not in listed:
                    files.append(attachment.to_file_entry())
        metadata = dict(job.job_metadata or {})
        metadata["files"] = files
        await self.jobs.patch(job_id, {"metadata": metadata})

    async def _drop_owner_file(self, job_id: str, attachment_id: str) -> None:
        job = await self.jobs.get(job_id)
        if job is None:
            return
        files = [entry for entry in job.files if not (isinstance(entry, dict) and entry.get("id") == attachment_id)]
        if len(files) == len(job.files):
            return
        metadata = dict(job.job_metadata or {})
        metadata["files"] = files
        await self.jobs.patch(job_id, {"metadata": metadata})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, attachment_id: str) -> Attachment:
        attachment = await self.attachments.get(attachment_id)
        if attachment is None:
            raise AttachmentNotFoundError(f"Attachment {attachment_id} not found")
        return attachment

    async def list_for_job(self, job_id: str) -> List[Attachment]:
        return await self.attachments.list_by_owner(job_id)

    async def resolve_download(self, attachment_id: str) -> DownloadTarget:
        """
        Pick how to serve an attachment: local file, signed GET, or stored URL.

        Raises:
            AttachmentNotFoundError: Unknown id, missing local file, or no locator
        """
        attachment = await self.get(attachment_id)

        local = self.gateway.local_store()
        if local.owns_url(attachment.url):
            path = local.resolve(url=attachment.url)
            if path is None or not path.is_file():
                raise AttachmentNotFoundError(f"File for attachment {attachment_id} not found")
            return DownloadTarget(attachment=attachment, path=path)

        if attachment.storage_key:
            signed = await self.gateway.create_signed_download_url(
                attachment.storage_key, attachment.content_type
            )
            if signed is not None:
                return DownloadTarget(attachment=attachment, redirect_url=signed.url)

        if attachment.url:
            return DownloadTarget(attachment=attachment, redirect_url=attachment.url)

        raise AttachmentNotFoundError(f"No file URL available for attachment {attachment_id}")

    async def open_blob(self, storage_key: str) -> Tuple[ObjectStream, str, str]:
        """
        Stream an object for the blob proxy.

        Returns:
            (stream, content_type, filename); content type and filename come
            from the attachment row when one matches the key

        Raises:
            AttachmentValidationError: Missing key
            StorageError: Backend cannot stream or the fetch failed
        """
        if not storage_key:
            raise AttachmentValidationError("key query parameter required")
        attachment = await self.attachments.get_by_storage_key(storage_key)
        stream = await self.gateway.get_object_stream(storage_key)
        if attachment is not None:
            filename = attachment.filename
            content_type = attachment.content_type or stream.content_type
        else:
            filename = storage_key.rsplit("/", 1)[-1] or "file"
            content_type = stream.content_type
        return stream, content_type, filename

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    async def _delete_blob(self, attachment: Attachment, exclude_ids: Iterable[str] = ()) -> bool:
        """
        Best-effort storage delete; never blocks the metadata delete.

        Bytes still referenced by a row outside exclude_ids are kept.
        """
        shared = await self.attachments.count_shared(
            attachment.storage_key, attachment.url, exclude_ids or (attachment.id,)
        )
        if shared:
            logger.info(
                f"Keeping shared blob for attachment {attachment.id}",
                extra={
                    "event": "blob_delete_skipped",
                    "attachment_id": attachment.id,
                    "storage_key": attachment.storage_key,
                    "shared_by": shared,
                },
            )
            return False

        try:
            return await self.gateway.delete(storage_key=attachment.storage_key, url=attachment.url)
        except Exception as e:
            blob_delete_failures_total.labels(backend="unknown").inc()
            log_blob_failure(
                logger, "unknown", "delete", str(e),
                include_traceback=True, attachment_id=attachment.id,
            )
            return False

    async def delete_attachment(self, attachment_id: str) -> Optional[Attachment]:
        """
        Delete the bytes (best-effort) and then the row.

        Returns:
            The deleted attachment, or None if there was nothing to delete
        """
        attachment = await self.attachments.get(attachment_id)
        if attachment is None:
            return None

        blob_deleted = await self._delete_blob(attachment)
        if not await self.attachments.delete(attachment_id):
            return None
        if attachment.owner_id:
            await self._drop_owner_file(attachment.owner_id, attachment_id)

        attachments_deleted_total.inc()
        log_attachment_deleted(logger, attachment.id, attachment.owner_id, blob_deleted)
        return attachment

    async def delete_owner_attachments(self, owner_id: str) -> int:
        """
        Cascade for a deleted job: storage delete per row, then remove the rows.

        Returns:
            Number of attachment rows removed
        """
        attachments = await self.attachments.list_by_owner(owner_id)
        doomed = [attachment.id for attachment in attachments]
        for attachment in attachments:
            blob_deleted = await self._delete_blob(attachment, doomed)
            log_attachment_deleted(logger, attachment.id, owner_id, blob_deleted, cascade=True)

        removed = await self.attachments.delete_by_owner(owner_id)
        if removed:
            attachments_deleted_total.inc(removed)
        return removed

    async def delete_job(self, job_id: str) -> bool:
        """
        Delete a job after cascading its attachments.

        Returns:
            False if the job does not exist
        """
        job = await self.jobs.get(job_id)
        if job is None:
            return False
        await self.delete_owner_attachments(job_id)
        return await self.jobs.delete(job_id)

"""
Tests for BlobGateway backend selection, fallback chain and signed URLs.
"""
import io
import logging
from urllib.parse import parse_qs, urlsplit

import pytest
from botocore.response import StreamingBody
from botocore.stub import ANY

from jobtracker.storage.errors import (
    SignedUrlRejectedError,
    StorageNotConfiguredError,
    UnsupportedOperationError,
    UploadRelayError,
    UpstreamStorageError,
)
from jobtracker.storage.gateway import canonicalize_signed_upload
from jobtracker.storage.outcomes import Degraded, Saved, SignedUpload, StorageBackend, StoredObject

from tests.conftest import BLOB_CDN, BLOB_CREDENTIALS, BLOB_UPLOAD_HOST, BUCKET, R2_CREDENTIALS, R2_HOST

PDF_BYTES = b"%PDF-1.4 abc"


def _fallback_records(caplog):
    return [r for r in caplog.records if getattr(r, "fallback", False)]


class TestBackendSelection:
    """Tests for select_backend priority and overrides."""

    def test_local_when_nothing_configured(self, gateway):
        assert gateway.select_backend() is StorageBackend.LOCAL

    def test_remote_blob_when_token_present(self, gateway, settings_box):
        settings_box.update(**BLOB_CREDENTIALS)
        assert gateway.select_backend() is StorageBackend.REMOTEBLOB

    def test_object_store_wins_over_remote_blob(self, gateway, settings_box):
        settings_box.update(**BLOB_CREDENTIALS, **R2_CREDENTIALS)
        assert gateway.select_backend() is StorageBackend.OBJECTSTORE

    def test_partial_r2_credentials_are_ignored(self, gateway, settings_box):
        settings_box.update(r2_bucket=BUCKET, r2_access_key="key")
        assert gateway.select_backend() is StorageBackend.LOCAL

    @pytest.mark.parametrize("name,expected", [
        ("r2", StorageBackend.OBJECTSTORE),
        ("S3", StorageBackend.OBJECTSTORE),
        ("vercel", StorageBackend.REMOTEBLOB),
        ("local", StorageBackend.LOCAL),
    ])
    def test_override_aliases(self, gateway, settings_box, name, expected):
        settings_box.update(**R2_CREDENTIALS)
        assert gateway.select_backend(name) is expected

    def test_provider_setting_overrides_detection(self, gateway, settings_box):
        settings_box.update(**R2_CREDENTIALS, blob_provider="local")
        assert gateway.select_backend() is StorageBackend.LOCAL

    def test_unknown_backend(self, gateway):
        with pytest.raises(ValueError):
            gateway.select_backend("ftp")

    def test_settings_read_per_call(self, gateway, settings_box):
        assert gateway.select_backend() is StorageBackend.LOCAL
        settings_box.update(**BLOB_CREDENTIALS)
        assert gateway.select_backend() is StorageBackend.REMOTEBLOB


class TestCanonicalizeSignedUpload:
    """Tests for provider response normalization."""

    def test_upper_case_upload_url_and_pathname(self):
        signed = canonicalize_signed_upload(
            {"uploadURL": "https://up/1", "url": "https://cdn/1", "pathname": "a/1.pdf"}, "default"
        )
        assert signed == SignedUpload(upload_url="https://up/1", url="https://cdn/1", storage_key="a/1.pdf")

    def test_signed_url_public_url_and_key(self):
        signed = canonicalize_signed_upload(
            {"signedUrl": "https://up/2", "publicUrl": "https://cdn/2", "key": "k2"}, "default"
        )
        assert signed == SignedUpload(upload_url="https://up/2", url="https://cdn/2", storage_key="k2")

    def test_snake_case_upload_url(self):
        signed = canonicalize_signed_upload({"upload_url": "https://up/3"}, "default")
        assert signed == SignedUpload(upload_url="https://up/3", url=None, storage_key="default")

    def test_empty_payload(self):
        assert canonicalize_signed_upload(None, "resume.pdf") == SignedUpload(None, None, "resume.pdf")


class TestSave:
    """Tests for BlobGateway.save."""

    @pytest.mark.asyncio
    async def test_local_happy_path(self, gateway, uploads_dir):
        result = await gateway.save("resume.pdf", PDF_BYTES, "application/pdf")

        assert isinstance(result, Saved)
        assert result.backend is StorageBackend.LOCAL
        assert result.value == StoredObject(url="/uploads/resume.pdf", storage_key="uploads/resume.pdf", size=12)
        assert (uploads_dir / "resume.pdf").read_bytes() == PDF_BYTES

    @pytest.mark.asyncio
    async def test_missing_bytes_never_falls_back(self, gateway):
        with pytest.raises(ValueError):
            await gateway.save("resume.pdf", None)

    @pytest.mark.asyncio
    async def test_missing_filename(self, gateway):
        with pytest.raises(ValueError):
            await gateway.save("", PDF_BYTES)

    @pytest.mark.asyncio
    async def test_object_store(self, gateway, settings_box, s3_stub):
        settings_box.update(**R2_CREDENTIALS)
        s3_stub.add_response(
            "put_object",
            {},
            {"Bucket": BUCKET, "Key": ANY, "Body": PDF_BYTES, "ContentType": "application/pdf"},
        )

        result = await gateway.save("resume.pdf", PDF_BYTES, "application/pdf")

        assert isinstance(result, Saved)
        assert result.backend is StorageBackend.OBJECTSTORE
        assert result.value.storage_key.startswith("attachments/")
        assert result.value.storage_key.endswith("/resume.pdf")
        # private bucket: reads go through a signed GET
        assert result.value.url is None
        s3_stub.assert_no_pending_responses()

    @pytest.mark.asyncio
    async def test_object_store_public_url(self, gateway, settings_box, s3_stub):
        settings_box.update(**R2_CREDENTIALS, r2_public_url_prefix="https://files.example.com")
        s3_stub.add_response("put_object", {}, {"Bucket": BUCKET, "Key": ANY, "Body": ANY, "ContentType": ANY})

        result = await gateway.save("resume.pdf", PDF_BYTES, "application/pdf")

        assert result.value.url == f"https://files.example.com/{result.value.storage_key}"

    @pytest.mark.asyncio
    async def test_identical_filenames_get_distinct_keys(self, gateway, settings_box, s3_stub):
        settings_box.update(**R2_CREDENTIALS)
        for _ in range(2):
            s3_stub.add_response("put_object", {}, {"Bucket": BUCKET, "Key": ANY, "Body": ANY, "ContentType": ANY})

        first = await gateway.save("resume.pdf", PDF_BYTES)
        second = await gateway.save("resume.pdf", PDF_BYTES)

        assert first.value.storage_key != second.value.storage_key

    @pytest.mark.asyncio
    async def test_object_store_failure_degrades_to_local(self, gateway, settings_box, s3_stub, uploads_dir, caplog):
        settings_box.update(**R2_CREDENTIALS)
        s3_stub.add_client_error("put_object", service_error_code="InternalError", http_status_code=500)

        with caplog.at_level(logging.WARNING):
            result = await gateway.save("resume.pdf", PDF_BYTES, "application/pdf")

        assert isinstance(result, Degraded)
        assert result.backend is StorageBackend.LOCAL
        assert result.value.url == "/uploads/resume.pdf"
        assert "InternalError" in result.reason or "upload" in result.reason
        assert (uploads_dir / "resume.pdf").read_bytes() == PDF_BYTES

        records = _fallback_records(caplog)
        assert len(records) == 1
        assert records[0].backend == "objectstore"
        assert records[0].operation == "save"

    @pytest.mark.asyncio
    async def test_object_store_failure_raises_when_enforced(self, gateway, settings_box, s3_stub, uploads_dir):
        settings_box.update(**R2_CREDENTIALS, enforce_remote_uploads=True)
        s3_stub.add_client_error("put_object", service_error_code="InternalError", http_status_code=500)

        with pytest.raises(UpstreamStorageError):
            await gateway.save("resume.pdf", PDF_BYTES, "application/pdf")

        assert not (uploads_dir / "resume.pdf").exists()

    @pytest.mark.asyncio
    async def test_unconfigured_override_degrades(self, gateway, uploads_dir):
        result = await gateway.save("resume.pdf", PDF_BYTES, backend="objectstore")

        assert isinstance(result, Degraded)
        assert result.backend is StorageBackend.LOCAL
        assert "not configured" in result.reason

    @pytest.mark.asyncio
    async def test_enforced_without_remote_config(self, gateway, settings_box, uploads_dir):
        settings_box.update(enforce_remote_uploads=True)

        with pytest.raises(StorageNotConfiguredError):
            await gateway.save("resume.pdf", PDF_BYTES)

        assert not (uploads_dir / "resume.pdf").exists()

    @pytest.mark.asyncio
    async def test_enforced_with_explicit_local_provider(self, gateway, settings_box):
        settings_box.update(enforce_remote_uploads=True, blob_provider="local")

        result = await gateway.save("resume.pdf", PDF_BYTES)

        assert isinstance(result, Saved)
        assert result.backend is StorageBackend.LOCAL

    @pytest.mark.asyncio
    async def test_remote_blob(self, gateway, settings_box, blob_service):
        settings_box.update(**BLOB_CREDENTIALS)

        result = await gateway.save("resume.pdf", PDF_BYTES, "application/pdf")

        assert isinstance(result, Saved)
        assert result.backend is StorageBackend.REMOTEBLOB
        key = result.value.storage_key
        assert key.startswith("attachments/") and key.endswith("/resume.pdf")
        assert result.value.url == f"{BLOB_CDN}/{key}"
        assert blob_service.objects[key] == PDF_BYTES

        create = blob_service.requests_to("POST")[0]
        assert create.headers["authorization"] == "Bearer test-blob-token"
        put = blob_service.requests_to("PUT", BLOB_UPLOAD_HOST)[0]
        assert put.headers["content-type"] == "application/pdf"

    @pytest.mark.asyncio
    async def test_remote_blob_explicit_upload_url(self, gateway, settings_box, blob_service):
        settings_box.update(blob_upload_url=f"https://{BLOB_UPLOAD_HOST}/put/fixed/resume.pdf?sig=1")

        result = await gateway.save("resume.pdf", PDF_BYTES, backend="remoteblob")

        assert isinstance(result, Saved)
        assert result.value.storage_key == "fixed/resume.pdf"
        assert blob_service.requests_to("POST") == []

    @pytest.mark.asyncio
    async def test_remote_blob_create_failure_degrades(self, gateway, settings_box, blob_service, uploads_dir):
        settings_box.update(**BLOB_CREDENTIALS)
        blob_service.create_status = 500

        result = await gateway.save("resume.pdf", PDF_BYTES)

        assert isinstance(result, Degraded)
        assert result.backend is StorageBackend.LOCAL
        assert "500" in result.reason
        assert (uploads_dir / "resume.pdf").exists()


class TestSignedUploadUrl:
    """Tests for BlobGateway.create_signed_upload_url."""

    @pytest.mark.asyncio
    async def test_local(self, gateway):
        result = await gateway.create_signed_upload_url("resume.pdf", "application/pdf")

        assert isinstance(result, Saved)
        assert result.value == SignedUpload(
            upload_url=None, url="/uploads/resume.pdf", storage_key="uploads/resume.pdf"
        )

    @pytest.mark.asyncio
    async def test_object_store(self, gateway, settings_box):
        settings_box.update(**R2_CREDENTIALS)

        result = await gateway.create_signed_upload_url("resume.pdf", "application/pdf")

        assert isinstance(result, Saved)
        assert result.backend is StorageBackend.OBJECTSTORE
        signed = result.value
        assert urlsplit(signed.upload_url).netloc == R2_HOST
        assert parse_qs(urlsplit(signed.upload_url).query)["X-Amz-Expires"] == ["900"]
        assert signed.storage_key.startswith("attachments/")
        assert signed.storage_key.endswith("/resume.pdf")

    @pytest.mark.asyncio
    async def test_remote_blob_is_canonicalized(self, gateway, settings_box, blob_service):
        settings_box.update(**BLOB_CREDENTIALS)
        blob_service.create_payload = {
            "signedUrl": f"https://{BLOB_UPLOAD_HOST}/put/k?sig=1",
            "publicURL": f"{BLOB_CDN}/k",
            "storageKey": "k",
        }

        result = await gateway.create_signed_upload_url("resume.pdf")

        assert isinstance(result, Saved)
        assert result.value == SignedUpload(
            upload_url=f"https://{BLOB_UPLOAD_HOST}/put/k?sig=1", url=f"{BLOB_CDN}/k", storage_key="k"
        )

    @pytest.mark.asyncio
    async def test_remote_blob_without_upload_url_degrades(self, gateway, settings_box, blob_service):
        settings_box.update(**BLOB_CREDENTIALS)
        blob_service.create_payload = {"url": f"{BLOB_CDN}/k"}

        result = await gateway.create_signed_upload_url("resume.pdf")

        assert isinstance(result, Degraded)
        assert result.value.upload_url is None

    @pytest.mark.asyncio
    async def test_failure_degrades_to_public_url_guess(self, gateway, settings_box, blob_service, caplog):
        settings_box.update(**BLOB_CREDENTIALS, blob_public_url_prefix=BLOB_CDN)
        blob_service.create_status = 503

        with caplog.at_level(logging.WARNING):
            result = await gateway.create_signed_upload_url("resume.pdf")

        assert isinstance(result, Degraded)
        assert result.backend is StorageBackend.REMOTEBLOB
        assert result.value == SignedUpload(upload_url=None, url=f"{BLOB_CDN}/resume.pdf", storage_key="resume.pdf")
        assert _fallback_records(caplog)[0].fallback_to == "public_url"

    @pytest.mark.asyncio
    async def test_failure_degrades_to_local_path(self, gateway, settings_box, blob_service):
        settings_box.update(**BLOB_CREDENTIALS)
        blob_service.create_status = 503

        result = await gateway.create_signed_upload_url("resume.pdf")

        assert isinstance(result, Degraded)
        assert result.backend is StorageBackend.LOCAL
        assert result.value == SignedUpload(
            upload_url=None, url="/uploads/resume.pdf", storage_key="uploads/resume.pdf"
        )

    @pytest.mark.asyncio
    async def test_failure_raises_when_enforced(self, gateway, settings_box, blob_service):
        settings_box.update(**BLOB_CREDENTIALS, enforce_remote_uploads=True)
        blob_service.create_status = 503

        with pytest.raises(UpstreamStorageError):
            await gateway.create_signed_upload_url("resume.pdf")

    @pytest.mark.asyncio
    async def test_enforced_without_remote_config(self, gateway, settings_box):
        settings_box.update(enforce_remote_uploads=True)

        with pytest.raises(StorageNotConfiguredError):
            await gateway.create_signed_upload_url("resume.pdf")


class TestSignedDownloadUrl:
    """Tests for BlobGateway.create_signed_download_url."""

    @pytest.mark.asyncio
    async def test_object_store(self, gateway, settings_box):
        settings_box.update(**R2_CREDENTIALS)

        signed = await gateway.create_signed_download_url("attachments/abc/resume.pdf", "application/pdf")

        assert signed.storage_key == "attachments/abc/resume.pdf"
        assert parse_qs(urlsplit(signed.url).query)["X-Amz-Expires"] == ["3600"]

    @pytest.mark.asyncio
    async def test_other_backends_return_none(self, gateway, settings_box):
        assert await gateway.create_signed_download_url("uploads/resume.pdf") is None
        settings_box.update(**BLOB_CREDENTIALS)
        assert await gateway.create_signed_download_url("attachments/abc/resume.pdf") is None


class TestObjectStream:
    """Tests for BlobGateway.get_object_stream."""

    @pytest.mark.asyncio
    async def test_streams_object_bytes(self, gateway, settings_box, s3_stub):
        settings_box.update(**R2_CREDENTIALS)
        data = b"0123456789" * 10000
        s3_stub.add_response(
            "get_object",
            {
                "Body": StreamingBody(io.BytesIO(data), len(data)),
                "ContentType": "application/pdf",
                "ContentLength": len(data),
            },
            {"Bucket": BUCKET, "Key": "attachments/abc/resume.pdf"},
        )

        stream = await gateway.get_object_stream("attachments/abc/resume.pdf")
        received = b"".join([chunk async for chunk in stream.chunks])

        assert received == data
        assert stream.content_type == "application/pdf"
        assert stream.content_length == len(data)

    @pytest.mark.asyncio
    async def test_only_for_object_store(self, gateway):
        with pytest.raises(UnsupportedOperationError):
            await gateway.get_object_stream("uploads/resume.pdf")


class TestRelayUpload:
    """Tests for the server-side PUT to a caller-supplied signed URL."""

    @pytest.mark.asyncio
    async def test_relay_to_remote_blob(self, gateway, settings_box, blob_service):
        settings_box.update(**BLOB_CREDENTIALS)
        upload_url = f"https://{BLOB_UPLOAD_HOST}/put/attachments/abc/resume.pdf?sig=1"

        result = await gateway.relay_upload(upload_url, "resume.pdf", PDF_BYTES, "application/pdf")

        assert isinstance(result, Saved)
        assert result.value.storage_key == "attachments/abc/resume.pdf"
        assert result.value.url == f"{BLOB_CDN}/attachments/abc/resume.pdf"
        assert blob_service.objects["attachments/abc/resume.pdf"] == PDF_BYTES

    @pytest.mark.asyncio
    async def test_relay_to_object_store(self, gateway, settings_box, blob_service):
        settings_box.update(**R2_CREDENTIALS)
        signed = (await gateway.create_signed_upload_url("resume.pdf", "application/pdf")).value

        result = await gateway.relay_upload(signed.upload_url, "resume.pdf", PDF_BYTES, "application/pdf")

        assert result.backend is StorageBackend.OBJECTSTORE
        assert result.value.storage_key == signed.storage_key
        assert blob_service.objects[signed.storage_key] == PDF_BYTES

    @pytest.mark.asyncio
    async def test_expired_url_is_rejected(self, gateway, settings_box, blob_service, uploads_dir):
        settings_box.update(**BLOB_CREDENTIALS)
        blob_service.put_status = 403

        with pytest.raises(SignedUrlRejectedError):
            await gateway.relay_upload(
                f"https://{BLOB_UPLOAD_HOST}/put/k?sig=expired", "resume.pdf", PDF_BYTES
            )

        # a relay failure never falls back
        assert not (uploads_dir / "resume.pdf").exists()

    @pytest.mark.asyncio
    async def test_other_put_failures(self, gateway, settings_box, blob_service):
        settings_box.update(**BLOB_CREDENTIALS)
        blob_service.put_status = 500

        with pytest.raises(UploadRelayError) as exc_info:
            await gateway.relay_upload(f"https://{BLOB_UPLOAD_HOST}/put/k?sig=1", "resume.pdf", PDF_BYTES)

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    @pytest.mark.parametrize("upload_url", [
        "http://169.254.169.254/latest/anything",
        "https://evil.example.com/put/k?sig=1",
        f"https://{BLOB_UPLOAD_HOST}.evil.example.com/put/k",
        f"ftp://{BLOB_UPLOAD_HOST}/put/k",
        "/relative/path",
    ])
    async def test_foreign_host_is_refused(self, gateway, settings_box, blob_service, upload_url):
        settings_box.update(**R2_CREDENTIALS)

        with pytest.raises(ValueError):
            await gateway.relay_upload(upload_url, "resume.pdf", PDF_BYTES)

        assert blob_service.requests == []

    def test_relay_hosts(self, gateway, settings_box):
        settings_box.update(**R2_CREDENTIALS, blob_upload_url="https://uploads.example.net/put?sig=1")

        assert gateway.relay_hosts(gateway.settings()) == {BLOB_UPLOAD_HOST, R2_HOST, "uploads.example.net"}
        assert gateway.is_relay_target(f"https://{BUCKET}.{R2_HOST}/attachments/a/resume.pdf")
        assert not gateway.is_relay_target("https://r2.cloudflarestorage.com/x")


class TestDelete:
    """Tests for best-effort BlobGateway.delete."""

    @pytest.mark.asyncio
    async def test_local_file(self, gateway, uploads_dir):
        stored = (await gateway.save("resume.pdf", PDF_BYTES)).value

        assert await gateway.delete(storage_key=stored.storage_key, url=stored.url) is True
        assert not (uploads_dir / "resume.pdf").exists()

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, gateway):
        assert await gateway.delete(storage_key="uploads/missing.pdf", url="/uploads/missing.pdf") is False
        assert await gateway.delete() is False

    @pytest.mark.asyncio
    async def test_object_store(self, gateway, settings_box, s3_stub):
        settings_box.update(**R2_CREDENTIALS)
        key = "attachments/abc/resume.pdf"
        s3_stub.add_response("head_object", {"ContentLength": 12}, {"Bucket": BUCKET, "Key": key})
        s3_stub.add_response("delete_object", {}, {"Bucket": BUCKET, "Key": key})

        assert await gateway.delete(storage_key=key) is True
        s3_stub.assert_no_pending_responses()

    @pytest.mark.asyncio
    async def test_object_store_missing_key(self, gateway, settings_box, s3_stub):
        settings_box.update(**R2_CREDENTIALS)
        s3_stub.add_client_error("head_object", service_error_code="404", http_status_code=404)

        assert await gateway.delete(storage_key="attachments/abc/resume.pdf") is False
        # no delete_object call was queued, so none was made
        s3_stub.assert_no_pending_responses()

    @pytest.mark.asyncio
    async def test_object_store_failure_is_logged_not_raised(self, gateway, settings_box, s3_stub, caplog):
        settings_box.update(**R2_CREDENTIALS)
        s3_stub.add_response("head_object", {"ContentLength": 12}, {"Bucket": BUCKET, "Key": ANY})
        s3_stub.add_client_error("delete_object", service_error_code="AccessDenied", http_status_code=403)

        with caplog.at_level(logging.ERROR):
            deleted = await gateway.delete(storage_key="attachments/abc/resume.pdf")

        assert deleted is False
        assert any(getattr(r, "event", None) == "blob_failure" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_remote_blob(self, gateway, settings_box, blob_service):
        settings_box.update(**BLOB_CREDENTIALS)
        stored = (await gateway.save("resume.pdf", PDF_BYTES)).value

        assert await gateway.delete(storage_key=stored.storage_key, url=stored.url) is True
        assert stored.storage_key not in blob_service.objects
        delete = blob_service.requests_to("DELETE")[0]
        assert delete.headers["authorization"] == "Bearer test-blob-token"

    @pytest.mark.asyncio
    async def test_local_file_after_remote_configured(self, gateway, settings_box, blob_service, uploads_dir):
        stored = (await gateway.save("resume.pdf", PDF_BYTES)).value
        settings_box.update(**BLOB_CREDENTIALS)

        assert await gateway.delete(storage_key=stored.storage_key, url=stored.url) is True
        assert blob_service.requests_to("DELETE") == []
        assert not (uploads_dir / "resume.pdf").exists()

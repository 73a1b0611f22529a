"""
Cloudflare R2 / S3-compatible storage client.

Uses boto3 with S3-compatible API to interact with Cloudflare R2.
This is storage-provider agnostic - works with any S3-compatible storage.

Errors from botocore are translated into jobtracker.storage.errors types so
the gateway can decide between falling back and surfacing a failure.
"""
import logging
from typing import Optional
from urllib.parse import quote, unquote, urlsplit

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from jobtracker.config import Settings
from jobtracker.storage.errors import (
    BlobNotFoundError,
    SignedUrlRejectedError,
    StorageNotConfiguredError,
    UpstreamStorageError,
)

logger = logging.getLogger(__name__)

BACKEND = "objectstore"
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
AUTH_ERROR_CODES = {"AccessDenied", "ExpiredToken", "SignatureDoesNotMatch", "InvalidAccessKeyId", "403"}
STREAM_CHUNK_SIZE = 64 * 1024


def _translate(error: Exception, action: str, object_key: str) -> Exception:
    """Map a botocore failure onto a storage error."""
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in NOT_FOUND_CODES:
            return BlobNotFoundError(f"Object {object_key} not found", BACKEND)
        if code in AUTH_ERROR_CODES:
            return SignedUrlRejectedError(
                f"Object store refused {action} for {object_key}: {code}", BACKEND, status
            )
        return UpstreamStorageError(f"Failed to {action} {object_key}: {error}", BACKEND, status)
    return UpstreamStorageError(f"Failed to {action} {object_key}: {error}", BACKEND)


class R2Client:
    """
    S3-compatible client for Cloudflare R2.

    Provides object put/get/delete and presigned URL generation for both
    direct uploads (PUT) and temporary downloads (GET). The bucket stays
    private; a public URL exists only when a public prefix is configured.
    """

    def __init__(self, settings: Settings, client=None):
        """
        Initialize R2 client with boto3.

        Args:
            settings: Settings snapshot holding the R2 credentials
            client: Optional pre-built boto3 S3 client (tests)

        Stays unconfigured (is_configured == False) if credentials are missing.
        """
        self._settings = settings
        self._client = client
        self._configured = client is not None

        if self._client is not None:
            return

        if not settings.has_object_store_credentials:
            logger.debug("R2 storage not configured (need R2_ACCESS_KEY, R2_SECRET_KEY, R2_BUCKET)")
            return

        try:
            # signature_version='s3v4' for R2 compatibility
            self._client = boto3.client(
                "s3",
                endpoint_url=settings.resolved_r2_endpoint,
                aws_access_key_id=settings.r2_access_key,
                aws_secret_access_key=settings.r2_secret_key,
                region_name=settings.r2_region,
                config=Config(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                ),
            )
            self._configured = True
        except BotoCoreError as e:
            logger.error(f"Failed to initialize R2 client: {e}")

    @property
    def is_configured(self) -> bool:
        """Check if R2 client is properly configured."""
        return self._configured and self._client is not None

    @property
    def bucket(self) -> str:
        """Get configured bucket name."""
        return self._settings.r2_bucket

    def _require_client(self):
        if not self.is_configured:
            raise StorageNotConfiguredError("R2 storage not configured", BACKEND)
        return self._client

    def public_url(self, object_key: str) -> Optional[str]:
        """Public URL for a key, or None when the bucket has no public prefix."""
        prefix = self._settings.r2_public_url_prefix
        if not prefix:
            return None
        return f"{prefix.rstrip('/')}/{quote(object_key)}"

    def key_from_url(self, url: str) -> Optional[str]:
        """
        Recover the object key from a path-style presigned URL.

        Returns None if the path does not start with the bucket name.
        """
        path = unquote(urlsplit(url).path).lstrip("/")
        bucket_prefix = f"{self.bucket}/"
        if self.bucket and path.startswith(bucket_prefix):
            return path[len(bucket_prefix):] or None
        return None

    def put_object(self, object_key: str, data: bytes, content_type: str) -> None:
        """
        Upload bytes to the bucket.

        Raises:
            StorageNotConfiguredError: If R2 is not configured
            UpstreamStorageError: If the put fails
        """
        client = self._require_client()
        try:
            client.put_object(
                Bucket=self.bucket,
                Key=object_key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "upload", object_key) from e
        logger.debug(f"Uploaded {len(data)} bytes to {object_key}")

    def generate_presigned_upload_url(
        self,
        object_key: str,
        content_type: str,
        expiration: Optional[int] = None
    ) -> str:
        """
        Generate a presigned PUT URL for direct upload.

        Args:
            object_key: The S3 object key (path in bucket)
            content_type: MIME type of the file
            expiration: URL expiration in seconds (default from settings)

        Returns:
            Presigned URL string

        Security:
            - URL expires after specified time
            - Only allows PUT (upload), not GET
            - Content-Type must match what was signed
        """
        client = self._require_client()
        if expiration is None:
            expiration = self._settings.r2_upload_expiration

        try:
            url = client.generate_presigned_url(
                ClientMethod="put_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": object_key,
                    "ContentType": content_type,
                },
                ExpiresIn=expiration,
            )
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "presign upload for", object_key) from e

        logger.debug(f"Generated presigned upload URL for {object_key}")
        return url

    def get_presigned_read_url(
        self,
        object_key: str,
        expiration: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """
        Generate a presigned GET URL for reading an object.

        Creates a temporary, signed URL that allows read access to the object.
        This is NOT a public URL - the bucket remains private.

        Args:
            object_key: The S3 object key (path in bucket)
            expiration: URL expiration in seconds (default from settings, 1 hour)
            content_type: Optional Content-Type the response should carry
        """
        client = self._require_client()
        if expiration is None:
            expiration = self._settings.r2_download_expiration

        params = {"Bucket": self.bucket, "Key": object_key}
        if content_type:
            params["ResponseContentType"] = content_type

        try:
            url = client.generate_presigned_url(
                ClientMethod="get_object",
                Params=params,
                ExpiresIn=expiration,
            )
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "presign download for", object_key) from e

        logger.debug(f"Generated presigned read URL for {object_key} (expires in {expiration}s)")
        return url

    def get_object(self, object_key: str) -> dict:
        """
        Fetch an object.

        Returns:
            The raw GetObject response (Body is a botocore StreamingBody)

        Raises:
            BlobNotFoundError: If the key does not exist
            UpstreamStorageError: For any other failure
        """
        client = self._require_client()
        try:
            return client.get_object(Bucket=self.bucket, Key=object_key)
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, "fetch", object_key) from e

    @staticmethod
    def read_chunk(body, chunk_size: int = STREAM_CHUNK_SIZE) -> bytes:
        """Read the next chunk of a GetObject body (b"" at end of stream)."""
        try:
            return body.read(chunk_size)
        except BotoCoreError as e:
            raise UpstreamStorageError(f"Object stream interrupted: {e}", BACKEND) from e

    def check_object_exists(self, object_key: str) -> bool:
        """
        Check if an object exists in the bucket.

        Lets deletes report whether anything was actually removed.
        """
        client = self._require_client()
        try:
            client.head_object(Bucket=self.bucket, Key=object_key)
            return True
        except ClientError as e:
            if str(e.response["Error"]["Code"]) in NOT_FOUND_CODES:
                return False
            raise _translate(e, "inspect", object_key) from e

    def delete_object(self, object_key: str) -> None:
        """
        Delete an object from the bucket.

        S3 deletes are idempotent: a missing key is not an error.

        Raises:
            UpstreamStorageError: If the backend rejects the delete
        """
        client = self._require_client()
        try:
            client.delete_object(Bucket=self.bucket, Key=object_key)
        except ClientError as e:
            if str(e.response["Error"]["Code"]) in NOT_FOUND_CODES:
                logger.debug(f"Object {object_key} not found in R2 (already deleted)")
                return
            raise _translate(e, "delete", object_key) from e
        except BotoCoreError as e:
            raise _translate(e, "delete", object_key) from e
        logger.debug(f"Deleted object {object_key} from R2")

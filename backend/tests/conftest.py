"""
Test configuration and fixtures.

Uses an in-memory SQLite database (aiosqlite), a Stubber-backed boto3 client
for the object store and an httpx MockTransport standing in for the remote
blob service and signed upload URLs. No external services are needed.
"""
import json
from typing import AsyncGenerator, Dict, List, Optional
from urllib.parse import unquote, urlsplit

import boto3
import httpx
import pytest
from botocore.config import Config
from botocore.stub import Stubber
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from jobtracker.config import Settings
from jobtracker.database import Database
from jobtracker.main import create_app
from jobtracker.models.job import Job
from jobtracker.repositories.attachment_repository import AttachmentRepository
from jobtracker.repositories.job_repository import JobRepository
from jobtracker.services.upload_service import UploadService
from jobtracker.storage.gateway import BlobGateway
from jobtracker.storage.r2_client import R2Client

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

BUCKET = "job-attachments"
R2_ACCOUNT_ID = "acc123"
R2_HOST = f"{R2_ACCOUNT_ID}.r2.cloudflarestorage.com"
BLOB_API_URL = "https://blob.test/api/blob"
BLOB_UPLOAD_HOST = "blob-upload.test"
BLOB_CDN = "https://cdn.blob.test"

# Every storage setting pinned so the developer's environment cannot leak in
STORAGE_DEFAULTS = {
    "environment": "test",
    "database_url": TEST_DATABASE_URL,
    "blob_provider": None,
    "r2_endpoint": None,
    "r2_account_id": None,
    "r2_bucket": None,
    "r2_access_key": None,
    "r2_secret_key": None,
    "r2_public_url_prefix": None,
    "blob_read_write_token": None,
    "blob_api_url": BLOB_API_URL,
    "blob_upload_url": None,
    "blob_public_url_prefix": None,
    "relay_allowed_hosts": [BLOB_UPLOAD_HOST],
    "uploads_url_prefix": "/uploads",
    "enforce_remote_uploads": False,
}

R2_CREDENTIALS = {
    "r2_account_id": R2_ACCOUNT_ID,
    "r2_bucket": BUCKET,
    "r2_access_key": "test-access-key",
    "r2_secret_key": "test-secret-key",
}

BLOB_CREDENTIALS = {
    "blob_read_write_token": "test-blob-token",
}


class SettingsBox:
    """Settings provider whose values a test can change between calls."""

    def __init__(self, settings: Settings):
        self.current = settings

    def __call__(self) -> Settings:
        return self.current

    def update(self, **overrides) -> Settings:
        self.current = self.current.model_copy(update=overrides)
        return self.current


class FakeBlobService:
    """
    In-process stand-in for the remote blob API and signed upload targets.

    Handles the create call, PUTs to signed URLs (blob service or object
    store host) and deletes. Status overrides simulate provider failures.
    """

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.requests: List[httpx.Request] = []
        self.create_status: int = 200
        self.put_status: int = 200
        self.delete_status: int = 200
        self.create_payload: Optional[dict] = None

    def requests_to(self, method: str, host: Optional[str] = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and (host is None or r.url.host == host)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if request.method == "POST" and url == BLOB_API_URL:
            if self.create_status != 200:
                return httpx.Response(self.create_status, text="create refused")
            name = json.loads(request.content)["name"]
            payload = self.create_payload or {
                "uploadURL": f"https://{BLOB_UPLOAD_HOST}/put/{name}?sig=abc",
                "url": f"{BLOB_CDN}/{name}",
                "pathname": name,
            }
            return httpx.Response(200, json=payload)

        if request.method == "PUT" and request.url.host == BLOB_UPLOAD_HOST:
            if self.put_status != 200:
                return httpx.Response(self.put_status, text="put refused")
            name = unquote(request.url.path)[len("/put/"):]
            self.objects[name] = request.content
            return httpx.Response(200, json={"url": f"{BLOB_CDN}/{name}", "pathname": name})

        if request.method == "PUT" and request.url.host == R2_HOST:
            if self.put_status != 200:
                return httpx.Response(self.put_status, text="<Error><Code>AccessDenied</Code></Error>")
            key = unquote(urlsplit(url).path).lstrip("/")[len(BUCKET) + 1:]
            self.objects[key] = request.content
            return httpx.Response(200)

        if request.method == "DELETE" and url.startswith(BLOB_API_URL + "/"):
            if self.delete_status != 200:
                return httpx.Response(self.delete_status, text="delete refused")
            key = unquote(url[len(BLOB_API_URL) + 1:])
            self.objects.pop(key, None)
            return httpx.Response(200, json={})

        return httpx.Response(404, text="no route")


@pytest.fixture(scope="function")
def uploads_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture(scope="function")
def make_settings(uploads_dir):
    """Build Settings from the pinned defaults plus overrides."""
    def _make(**overrides) -> Settings:
        values = {**STORAGE_DEFAULTS, "uploads_dir": str(uploads_dir), **overrides}
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture(scope="function")
def settings_box(make_settings) -> SettingsBox:
    """Settings provider with no remote storage configured."""
    return SettingsBox(make_settings())


@pytest.fixture(scope="function")
def s3_client():
    return boto3.client(
        "s3",
        endpoint_url=f"https://{R2_HOST}",
        aws_access_key_id="test-access-key",
        aws_secret_access_key="test-secret-key",
        region_name="auto",
        config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
    )


@pytest.fixture(scope="function")
def s3_stub(s3_client):
    """Activated Stubber; queue responses with add_response/add_client_error."""
    stubber = Stubber(s3_client)
    stubber.activate()
    yield stubber
    stubber.deactivate()


@pytest.fixture(scope="function")
def r2_factory(s3_client, s3_stub):
    """R2Client factory that uses the stubbed client when credentials are set."""
    def _factory(settings: Settings) -> R2Client:
        if settings.has_object_store_credentials:
            return R2Client(settings, client=s3_client)
        return R2Client(settings)
    return _factory


@pytest.fixture(scope="function")
def blob_service() -> FakeBlobService:
    return FakeBlobService()


@pytest.fixture(scope="function")
def http_transport(blob_service) -> httpx.MockTransport:
    return httpx.MockTransport(blob_service.handler)


@pytest.fixture(scope="function")
async def database() -> AsyncGenerator[Database, None]:
    """Fresh in-memory database with all tables."""
    db = Database(TEST_DATABASE_URL)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture(scope="function")
def gateway(settings_box, http_transport, r2_factory) -> BlobGateway:
    return BlobGateway(
        settings_provider=settings_box,
        http_transport=http_transport,
        r2_client_factory=r2_factory,
    )


@pytest.fixture(scope="function")
def attachment_repository(database) -> AttachmentRepository:
    return AttachmentRepository(database)


@pytest.fixture(scope="function")
def job_repository(database) -> JobRepository:
    return JobRepository(database)


@pytest.fixture(scope="function")
def upload_service(gateway, attachment_repository, job_repository) -> UploadService:
    return UploadService(gateway, attachment_repository, job_repository)


@pytest.fixture(scope="function")
async def test_job(job_repository) -> Job:
    """Create a job application record."""
    return await job_repository.create(
        title="Backend Engineer",
        company="Acme",
        metadata={"source": "referral"},
    )


@pytest.fixture(scope="function")
def app(settings_box, database, http_transport, r2_factory) -> FastAPI:
    return create_app(
        settings_provider=settings_box,
        database=database,
        http_transport=http_transport,
        r2_client_factory=r2_factory,
    )


@pytest.fixture(scope="function")
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

"""
FastAPI application entry point.

create_app is the composition root: it builds the database handle, the
repositories, the blob gateway and the upload service once and stores them on
app.state for the route dependencies.
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from jobtracker.api.errors import register_exception_handlers
from jobtracker.api.router import api_router
from jobtracker.config import Settings, get_settings
from jobtracker.database import Database
from jobtracker.middleware.metrics_middleware import MetricsMiddleware
from jobtracker.repositories.attachment_repository import AttachmentRepository
from jobtracker.repositories.job_repository import JobRepository
from jobtracker.services.upload_service import UploadService
from jobtracker.storage.gateway import BlobGateway
from jobtracker.storage.r2_client import R2Client
from jobtracker.utils.logging import configure_logging

VERSION = "0.1.0"


def create_app(
    settings_provider: Callable[[], Settings] = get_settings,
    database: Optional[Database] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    r2_client_factory: Callable[[Settings], R2Client] = R2Client,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings_provider: Returns current Settings; storage re-reads it per call
        database: Database to use instead of one built from database_url
        http_transport: httpx transport for remote blob calls and relays
        r2_client_factory: Builds the object store client from Settings
    """
    settings = settings_provider()
    database = database or Database(settings.database_url)
    gateway = BlobGateway(
        settings_provider=settings_provider,
        http_transport=http_transport,
        r2_client_factory=r2_client_factory,
    )
    attachments = AttachmentRepository(database)
    jobs = JobRepository(database)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for startup/shutdown events.
        - Startup: configure logging and create missing tables
        - Shutdown: release the connection pool
        """
        configure_logging("jobtracker-api", settings.log_level)
        await database.create_all()
        yield
        await database.dispose()

    app = FastAPI(
        title="Job Tracker API",
        description="Attachment storage for the job tracker dashboard",
        version=VERSION,
        lifespan=lifespan,
    )

    app.state.settings_provider = settings_provider
    app.state.database = database
    app.state.gateway = gateway
    app.state.jobs = jobs
    app.state.upload_service = UploadService(gateway, attachments, jobs)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Metrics middleware (must be after CORS to track all requests)
    app.add_middleware(MetricsMiddleware, uploads_prefix=settings.uploads_url_prefix)

    register_exception_handlers(app)

    app.include_router(api_router, prefix="/api")

    # Locally stored files are readable at their stored url
    uploads_dir = Path(settings.uploads_dir)
    app.mount(
        settings.uploads_url_prefix,
        StaticFiles(directory=uploads_dir, check_dir=False),
        name="uploads",
    )

    @app.get("/")
    async def root():
        """Root endpoint."""
        current = settings_provider()
        return {
            "message": "Job Tracker API",
            "version": VERSION,
            "environment": current.environment,
        }

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    return app


app = create_app()

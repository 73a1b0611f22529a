"""
API router aggregator.
Includes all route modules.
"""
from fastapi import APIRouter
from jobtracker.api import blob_proxy, health, jobs, uploads

api_router = APIRouter()

# Include route modules
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(uploads.router, prefix="/uploads", tags=["uploads"])
api_router.include_router(blob_proxy.router, prefix="/blob-proxy", tags=["uploads"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])

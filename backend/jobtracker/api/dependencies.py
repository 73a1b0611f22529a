"""
FastAPI dependencies.

Everything is built once in create_app and stored on app.state; these
accessors hand it to the route functions.
"""
from fastapi import Request

from jobtracker.database import Database
from jobtracker.repositories.job_repository import JobRepository
from jobtracker.services.upload_service import UploadService


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_job_repository(request: Request) -> JobRepository:
    return request.app.state.jobs


def get_upload_service(request: Request) -> UploadService:
    return request.app.state.upload_service

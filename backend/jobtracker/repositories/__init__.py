"""
Repository layer for database operations.
"""
from jobtracker.repositories.attachment_repository import AttachmentRepository
from jobtracker.repositories.job_repository import JobRepository

__all__ = ["AttachmentRepository", "JobRepository"]

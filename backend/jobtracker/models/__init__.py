"""
Database models package.
"""
from jobtracker.models.base import Base
from jobtracker.models.job import Job
from jobtracker.models.attachment import Attachment

__all__ = [
    "Base",
    "Job",
    "Attachment",
]

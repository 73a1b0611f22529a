"""
Job application model.

Only the columns the attachment layer touches are modelled in detail; the
rest of the job record is owned by the dashboard and kept in `metadata`.
"""
from sqlalchemy import JSON, Column, DateTime, String, Text

from jobtracker.models.base import Base, generate_uuid, utcnow


class Job(Base):
    """Job application record. Attachments are listed in job_metadata["files"]."""
    __tablename__ = "jobs"

    id = Column(String, primary_key=True, default=generate_uuid)
    title = Column(Text, nullable=False)
    company = Column(Text, nullable=True)
    status = Column(Text, nullable=True, default="applied")

    # "metadata" is reserved on declarative classes
    job_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def files(self) -> list:
        return list((self.job_metadata or {}).get("files") or [])

    def __repr__(self):
        return f"<Job(id={self.id}, title={self.title}, status={self.status})>"

"""
Attachment model for files linked to job applications.

Stores metadata about attachment bytes held by one of the storage backends.
The bytes themselves live in the object store, the remote blob service or the
local uploads directory, never in the database.

Lifecycle:
1. Upload completes (server save, server relay or client PUT)
2. Row inserted with the storage locator (storage_key / url)
3. Row deleted after a best-effort delete of the backing bytes
"""
from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, String

from jobtracker.models.base import Base, generate_uuid, utcnow


class Attachment(Base):
    """
    Attachment metadata model.

    Attributes:
        id: Unique identifier (UUID), never reused
        owner_id: Owning job (nullable: orphaned uploads are allowed)
        filename: Client-supplied name, preserved verbatim
        storage_key: Backend-specific locator; immutable once bytes are written
        url: Best-effort direct URL; null when reads need a signed GET
        size: Payload size in bytes
        content_type: Declared MIME type (trusted, not sniffed)
        created_at: Creation time
    """
    __tablename__ = "attachments"

    id = Column(String, primary_key=True, default=generate_uuid)

    owner_id = Column(
        "job_id",
        String,
        ForeignKey("jobs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    filename = Column(String, nullable=False)

    # Examples: uploads/resume.pdf (local), attachments/<hex>/resume.pdf (object store)
    storage_key = Column(String, nullable=True)

    url = Column(String, nullable=True)

    size = Column(BigInteger, nullable=True)

    content_type = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_attachments_storage_key", "storage_key"),
    )

    def to_file_entry(self) -> dict:
        """Shape stored in the owning job's metadata.files list."""
        return {"id": self.id, "name": self.filename, "url": self.url}

    def __repr__(self):
        return (
            f"<Attachment(id={self.id}, owner={self.owner_id}, "
            f"filename={self.filename}, key={self.storage_key})>"
        )

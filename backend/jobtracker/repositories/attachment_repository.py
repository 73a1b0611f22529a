"""
Repository for attachment metadata.
CRUD over the attachments table, scoped by owning job.
"""
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, or_, select

from jobtracker.database import Database
from jobtracker.models.attachment import Attachment

# Columns callers may change after insert. storage_key is fixed once the bytes
# are written.
UPDATABLE_FIELDS = ("owner_id", "filename", "url", "size", "content_type")


class AttachmentRepository:
    """Repository for attachment database operations."""

    def __init__(self, database: Database):
        self._database = database

    async def insert(
        self,
        filename: str,
        storage_key: Optional[str],
        url: Optional[str],
        size: Optional[int],
        content_type: Optional[str],
        owner_id: Optional[str] = None,
    ) -> Attachment:
        """
        Create an attachment row.

        The id and created_at are assigned here.

        Returns:
            The persisted Attachment
        """
        async with self._database.session() as db:
            attachment = Attachment(
                owner_id=owner_id,
                filename=filename,
                storage_key=storage_key,
                url=url,
                size=size,
                content_type=content_type,
            )
            db.add(attachment)
            await db.commit()
            await db.refresh(attachment)
            return attachment

    async def update(self, attachment_id: str, **fields) -> Optional[Attachment]:
        """
        Update mutable fields of an attachment.

        Raises:
            ValueError: If a field is not updatable (storage_key included)
        """
        invalid = set(fields) - set(UPDATABLE_FIELDS)
        if invalid:
            raise ValueError(f"Cannot update attachment fields: {', '.join(sorted(invalid))}")

        async with self._database.session() as db:
            attachment = await db.get(Attachment, attachment_id)
            if attachment is None:
                return None
            for name, value in fields.items():
                setattr(attachment, name, value)
            await db.commit()
            await db.refresh(attachment)
            return attachment

    async def get(self, attachment_id: str) -> Optional[Attachment]:
        async with self._database.session() as db:
            return await db.get(Attachment, attachment_id)

    async def get_by_storage_key(self, storage_key: str) -> Optional[Attachment]:
        """Most recent attachment stored under a key (used by the blob proxy)."""
        async with self._database.session() as db:
            result = await db.execute(
                select(Attachment)
                .where(Attachment.storage_key == storage_key)
                .order_by(Attachment.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def count_shared(
        self,
        storage_key: Optional[str],
        url: Optional[str],
        exclude_ids: Iterable[str] = (),
    ) -> int:
        """
        Count rows outside exclude_ids that point at the same bytes.

        Local keys are flat, so two uploads with one filename share a file.
        """
        matches = []
        if storage_key:
            matches.append(Attachment.storage_key == storage_key)
        if url:
            matches.append(Attachment.url == url)
        if not matches:
            return 0

        query = select(func.count()).select_from(Attachment).where(or_(*matches))
        excluded = list(exclude_ids)
        if excluded:
            query = query.where(Attachment.id.notin_(excluded))
        async with self._database.session() as db:
            result = await db.execute(query)
            return result.scalar_one()

    async def list_by_owner(self, owner_id: str) -> List[Attachment]:
        """
        Attachments of a job in insertion order.
        """
        async with self._database.session() as db:
            result = await db.execute(
                select(Attachment)
                .where(Attachment.owner_id == owner_id)
                .order_by(Attachment.created_at, Attachment.id)
            )
            return list(result.scalars().all())

    async def delete(self, attachment_id: str) -> bool:
        """
        Remove one attachment row.

        The caller deletes the backing bytes first.

        Returns:
            True if a row was removed
        """
        async with self._database.session() as db:
            result = await db.execute(
                delete(Attachment).where(Attachment.id == attachment_id)
            )
            await db.commit()
            return result.rowcount > 0

    async def delete_by_owner(self, owner_id: str) -> int:
        """
        Remove every attachment row of a job.

        The caller runs the best-effort storage delete for each row first.

        Returns:
            Number of rows removed
        """
        async with self._database.session() as db:
            result = await db.execute(
                delete(Attachment).where(Attachment.owner_id == owner_id)
            )
            await db.commit()
            return result.rowcount

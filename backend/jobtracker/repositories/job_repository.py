"""
Repository for job application records.

The attachment layer only reads jobs and patches their metadata; the full job
CRUD belongs to the dashboard API.
"""
from typing import Any, Dict, Optional

from sqlalchemy import delete

from jobtracker.database import Database
from jobtracker.models.job import Job

PATCHABLE_FIELDS = ("title", "company", "status", "metadata")


class JobRepository:
    """Repository for job database operations."""

    def __init__(self, database: Database):
        self._database = database

    async def create(
        self,
        title: str,
        company: Optional[str] = None,
        status: str = "applied",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Job:
        async with self._database.session() as db:
            job = Job(title=title, company=company, status=status, job_metadata=metadata)
            db.add(job)
            await db.commit()
            await db.refresh(job)
            return job

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._database.session() as db:
            return await db.get(Job, job_id)

    async def patch(self, job_id: str, fields: Dict[str, Any]) -> Optional[Job]:
        """
        Update the given fields of a job.

        Args:
            job_id: Job ID
            fields: Subset of title, company, status, metadata

        Returns:
            The updated job, or None if it does not exist

        Raises:
            ValueError: If no patchable field was given
        """
        updates = {k: v for k, v in fields.items() if k in PATCHABLE_FIELDS}
        if not updates:
            raise ValueError("No updatable fields provided")

        async with self._database.session() as db:
            job = await db.get(Job, job_id)
            if job is None:
                return None
            for name, value in updates.items():
                if name == "metadata":
                    # new dict so the JSON column registers the change
                    job.job_metadata = dict(value) if value is not None else None
                else:
                    setattr(job, name, value)
            await db.commit()
            await db.refresh(job)
            return job

    async def delete(self, job_id: str) -> bool:
        async with self._database.session() as db:
            result = await db.execute(delete(Job).where(Job.id == job_id))
            await db.commit()
            return result.rowcount > 0

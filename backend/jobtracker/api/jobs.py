"""
Job endpoints used by the attachment layer.

Reading a job returns its attachments; deleting one cascades to them.
"""
from fastapi import APIRouter, Depends, Response, status

from jobtracker.api.dependencies import get_job_repository, get_upload_service
from jobtracker.repositories.job_repository import JobRepository
from jobtracker.schemas.job import JobResponse
from jobtracker.schemas.upload import AttachmentResponse
from jobtracker.services.upload_service import AttachmentNotFoundError, UploadService

router = APIRouter()


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    jobs: JobRepository = Depends(get_job_repository),
    service: UploadService = Depends(get_upload_service),
):
    job = await jobs.get(job_id)
    if job is None:
        raise AttachmentNotFoundError(f"Job {job_id} not found")

    response = JobResponse.model_validate(job)
    response.attachments = [
        AttachmentResponse.model_validate(attachment)
        for attachment in await service.list_for_job(job_id)
    ]
    return response


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(
    job_id: str,
    service: UploadService = Depends(get_upload_service),
):
    """
    Delete a job and its attachments.

    Storage deletes are best-effort and never block removing the rows.
    """
    if not await service.delete_job(job_id):
        raise AttachmentNotFoundError(f"Job {job_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)

"""Endpoints for jobs running in this process."""

from fastapi import APIRouter, Depends, HTTPException, status

from mediaproc.api.dependencies import get_namespace, get_service
from mediaproc.schemas.jobs import (
    ActiveJobResponse,
    JobActionResponse,
    JobListResponse,
    JobProgressResponse,
)
from mediaproc.services.processing import TranscodeService

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=JobListResponse)
async def list_jobs(
    service: TranscodeService = Depends(get_service),
) -> JobListResponse:
    """List running jobs."""
    jobs = [
        ActiveJobResponse(
            file_id=job.file_id,
            namespace=job.namespace,
            started_at=job.started_at,
            progress=job.progress,
            state=job.state.value,
            cancel_requested=job.cancel_requested,
        )
        for job in service.active_jobs()
    ]
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/{file_id}/progress", response_model=JobProgressResponse)
async def get_job_progress(
    file_id: str,
    namespace: list[str] = Depends(get_namespace),
    service: TranscodeService = Depends(get_service),
) -> JobProgressResponse:
    """Get progress of a job. Jobs not running here report processing=false."""
    job = service.registry.get(file_id, namespace)
    if job is None:
        return JobProgressResponse(file_id=file_id, namespace=namespace, processing=False)
    return JobProgressResponse(
        file_id=file_id,
        namespace=namespace,
        processing=True,
        progress=job.progress,
        state=job.state.value,
    )


@router.post("/{file_id}/cancel", response_model=JobActionResponse)
async def cancel_job(
    file_id: str,
    namespace: list[str] = Depends(get_namespace),
    service: TranscodeService = Depends(get_service),
) -> JobActionResponse:
    """Request cancellation of a running job."""
    if not service.cancel(file_id, namespace):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {file_id} is not running",
        )
    return JobActionResponse(success=True, message=f"Cancellation requested for {file_id}")

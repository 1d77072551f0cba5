"""Temp file inspection and maintenance endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import FileResponse

from mediaproc.api.dependencies import get_namespace, get_service
from mediaproc.exceptions import NotFoundError, StillProcessingError
from mediaproc.schemas.jobs import JobActionResponse
from mediaproc.schemas.temp_files import (
    DanglingJobResponse,
    DanglingListResponse,
    NamespaceStatsResponse,
    SweepResponse,
    TempStatsResponse,
)
from mediaproc.services.processing import TranscodeService

router = APIRouter(prefix="/temp", tags=["temp"])


@router.get("/dangling", response_model=DanglingListResponse)
def list_dangling(
    namespace: list[str] = Depends(get_namespace),
    service: TranscodeService = Depends(get_service),
) -> DanglingListResponse:
    """List jobs in a namespace whose owner is no longer running."""
    jobs = [
        DanglingJobResponse(
            file_id=job.file_id,
            namespace=job.namespace,
            temp_dir=str(job.temp_dir),
            input_path=str(job.input_path) if job.input_path else None,
            output_path=str(job.output_path) if job.output_path else None,
            is_complete=job.is_complete,
            original_name=job.lock.original_name,
            mime_type=job.lock.mime_type,
            started_at=job.lock.started_at,
            owner_process_id=job.lock.owner_process_id,
            owner_hostname=job.lock.owner_hostname,
            last_heartbeat_at=job.lock.last_heartbeat_at,
        )
        for job in service.list_dangling(namespace)
    ]
    return DanglingListResponse(namespace=namespace, jobs=jobs, total=len(jobs))


@router.get("/stats", response_model=TempStatsResponse)
def get_temp_stats(
    service: TranscodeService = Depends(get_service),
) -> TempStatsResponse:
    """Get temp storage statistics."""
    stats = service.get_stats()
    return TempStatsResponse(
        total_jobs=stats.total_jobs,
        total_size_bytes=stats.total_size_bytes,
        total_size_mb=stats.total_size_mb,
        dangling_count=stats.dangling_count,
        namespaces=[
            NamespaceStatsResponse(
                namespace=name,
                jobs=ns.jobs,
                size_bytes=ns.size_bytes,
                dangling=ns.dangling,
            )
            for name, ns in stats.by_namespace.items()
        ],
    )


@router.post("/sweep", response_model=SweepResponse)
def run_sweep(
    max_age_hours: Optional[float] = Query(None, gt=0),
    service: TranscodeService = Depends(get_service),
) -> SweepResponse:
    """Manually delete dangling jobs older than max_age_hours."""
    hours = max_age_hours if max_age_hours is not None else service.default_max_age_hours
    removed = service.sweep(hours * 3600)
    return SweepResponse(removed=removed, max_age_hours=hours)


@router.get("/{file_id}/output")
def download_output(
    file_id: str,
    namespace: list[str] = Depends(get_namespace),
    service: TranscodeService = Depends(get_service),
) -> FileResponse:
    """Download a job's canonical output."""
    try:
        with service.fetch_output(file_id, namespace) as processed:
            path, mime_type = processed.path, processed.mime_type
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return FileResponse(path, media_type=mime_type, filename=f"{file_id}.mp4")


@router.delete("/{file_id}", response_model=JobActionResponse)
def cleanup_job(
    file_id: str,
    namespace: list[str] = Depends(get_namespace),
    service: TranscodeService = Depends(get_service),
) -> JobActionResponse:
    """Delete a job's temp files."""
    try:
        service.cleanup(file_id, namespace)
    except StillProcessingError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return JobActionResponse(success=True, message=f"Cleaned up {file_id}")

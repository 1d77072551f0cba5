"""Pydantic schemas for in-flight jobs."""

from typing import Optional

from pydantic import BaseModel

from mediaproc.schemas.base import UTCDateTime


class ActiveJobResponse(BaseModel):
    """Schema for a job running in this process."""

    file_id: str
    namespace: list[str]
    started_at: UTCDateTime
    progress: float
    state: str
    cancel_requested: bool


class JobListResponse(BaseModel):
    """Schema for list of running jobs."""

    jobs: list[ActiveJobResponse]
    total: int


class JobProgressResponse(BaseModel):
    """Schema for a job's progress."""

    file_id: str
    namespace: list[str]
    processing: bool
    progress: Optional[float] = None
    state: Optional[str] = None


class JobActionResponse(BaseModel):
    """Schema for job action response."""

    success: bool
    message: str

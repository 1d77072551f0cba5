"""Pydantic schemas for temp file inspection and maintenance."""

from typing import Optional

from pydantic import BaseModel

from mediaproc.schemas.base import UTCDateTime


class DanglingJobResponse(BaseModel):
    """Schema for a job whose owner is gone."""

    file_id: str
    namespace: list[str]
    temp_dir: str
    input_path: Optional[str] = None
    output_path: Optional[str] = None
    is_complete: bool
    original_name: str
    mime_type: str
    started_at: UTCDateTime
    owner_process_id: int
    owner_hostname: Optional[str] = None
    last_heartbeat_at: Optional[UTCDateTime] = None


class DanglingListResponse(BaseModel):
    """Schema for list of dangling jobs in a namespace."""

    namespace: list[str]
    jobs: list[DanglingJobResponse]
    total: int


class NamespaceStatsResponse(BaseModel):
    """Temp usage for a single namespace."""

    namespace: str
    jobs: int
    size_bytes: int
    dangling: int


class TempStatsResponse(BaseModel):
    """Temp storage statistics response."""

    total_jobs: int
    total_size_bytes: int
    total_size_mb: float
    dangling_count: int
    namespaces: list[NamespaceStatsResponse]


class SweepResponse(BaseModel):
    """Result of a sweep."""

    removed: int
    max_age_hours: float

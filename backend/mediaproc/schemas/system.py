"""Pydantic schemas for service health and encoder capability."""

from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Schema for the health check."""

    status: str
    version: str
    active_jobs: int
    temp_base_path: str


class HWAccelResponse(BaseModel):
    """Schema for the selected encoder."""

    available: bool
    detected: bool
    type: str
    codec: str
    device: Optional[str] = None
    input_flags: list[str]
    output_flags: list[str]
    quality_flag: str

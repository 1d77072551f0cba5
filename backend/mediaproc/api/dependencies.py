"""Shared FastAPI dependencies."""

from fastapi import HTTPException, Query, Request, status

from mediaproc.services.processing import TranscodeService
from mediaproc.services.temp_store import validate_namespace


def get_service(request: Request) -> TranscodeService:
    """TranscodeService built by the application factory."""
    return request.app.state.service


def get_namespace(
    namespace: str = Query(..., description="Namespace segments joined by '/'"),
) -> list[str]:
    """Split "a/b" into ["a", "b"]."""
    segments = namespace.strip("/").split("/")
    try:
        validate_namespace(segments)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid namespace {namespace!r}: {e}",
        )
    return segments

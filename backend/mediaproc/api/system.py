"""Health and encoder capability endpoints."""

from fastapi import APIRouter, Depends

from mediaproc import __version__
from mediaproc.api.dependencies import get_service
from mediaproc.schemas.system import HealthResponse, HWAccelResponse
from mediaproc.services.processing import TranscodeService

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(
    service: TranscodeService = Depends(get_service),
) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        active_jobs=len(service.active_jobs()),
        temp_base_path=str(service.store.base_path),
    )


@router.get("/hwaccel", response_model=HWAccelResponse)
async def get_hwaccel(
    service: TranscodeService = Depends(get_service),
) -> HWAccelResponse:
    """Get the encoder jobs will use."""
    detector = service.hwaccel
    config = detector.config()
    return HWAccelResponse(
        available=detector.is_available(),
        detected=detector.detected,
        type=config.encoder_type.value,
        codec=config.codec,
        device=config.device,
        input_flags=list(config.input_flags),
        output_flags=list(config.output_flags),
        quality_flag=config.quality_flag,
    )

"""Composition root and FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from mediaproc import __version__
from mediaproc.api import api_router
from mediaproc.config import Settings, get_settings
from mediaproc.services.hwaccel import HardwareAccelerationDetector
from mediaproc.services.job_registry import JobRegistry
from mediaproc.services.liveness import ProcessLiveness
from mediaproc.services.processing import TranscodeService
from mediaproc.services.sweeper import SweepMonitor
from mediaproc.services.temp_store import TempFileStore
from mediaproc.services.transcoder import SegmentTranscoder

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every component, wired once."""

    settings: Settings
    hwaccel: HardwareAccelerationDetector
    store: TempFileStore
    registry: JobRegistry
    transcoder: SegmentTranscoder
    service: TranscodeService


def build_services(settings: Optional[Settings] = None) -> Services:
    """Construct the object graph from settings.

    The detector is built first and handed to the transcoder; nothing is
    looked up through module-level singletons.
    """
    settings = settings or get_settings()

    hwaccel = HardwareAccelerationDetector(
        ffmpeg_path=settings.ffmpeg_path,
        vaapi_device=settings.hwaccel_vaapi_device,
        probe_timeout=settings.hwaccel_probe_timeout_seconds,
        enabled=settings.hwaccel_enabled,
    )
    store = TempFileStore(
        settings.temp_base_path,
        liveness=ProcessLiveness(heartbeat_grace_seconds=settings.lock_heartbeat_grace_seconds),
        max_scan_depth=settings.namespace_scan_max_depth,
    )
    registry = JobRegistry()
    transcoder = SegmentTranscoder(
        hwaccel,
        ffmpeg_path=settings.ffmpeg_path,
        ffprobe_path=settings.ffprobe_path,
        probe_timeout=settings.probe_timeout_seconds,
        segment_duration=settings.segment_duration_seconds,
    )
    service = TranscodeService(
        store,
        transcoder,
        registry=registry,
        heartbeat_interval_seconds=settings.lock_heartbeat_interval_seconds,
        default_max_age_hours=settings.temp_max_age_hours,
    )
    return Services(
        settings=settings,
        hwaccel=hwaccel,
        store=store,
        registry=registry,
        transcoder=transcoder,
        service=service,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    services: Services = app.state.services
    settings = services.settings

    services.store.ensure_base_dir()
    await services.hwaccel.detect()

    # Start sweep monitor only when configured
    monitor: Optional[SweepMonitor] = None
    if settings.sweep_interval_minutes:
        monitor = SweepMonitor(
            services.service,
            interval_minutes=settings.sweep_interval_minutes,
            max_age_hours=settings.temp_max_age_hours,
        )
        await monitor.start()

    yield

    # Shutdown
    if monitor is not None:
        await monitor.stop()
    for job in services.service.active_jobs():
        services.service.cancel(job.file_id, job.namespace)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """Create the operator API around a wired set of services."""
    settings = settings or (services.settings if services else get_settings())
    services = services or build_services(settings)

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.service = services.service

    # Include API routes
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API info."""
        return {
            "name": settings.app_name,
            "version": __version__,
            "docs": "/docs",
            "health": f"{settings.api_prefix}/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    _settings = get_settings()
    uvicorn.run(app, host=_settings.host, port=_settings.port, log_level="info")

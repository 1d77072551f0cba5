"""Caller-facing transcoding service.

TranscodeService ties the temp file store, the job registry and the segment
transcoder together. Consumers hand it a file identity plus a source and get
back a ProcessingResult; after they have persisted the output elsewhere they
call cleanup().
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from mediaproc.exceptions import (
    AlreadyProcessingError,
    JobCancelledError,
    MediaProcError,
    StillProcessingError,
)
from mediaproc.services.hwaccel import HardwareAccelerationDetector
from mediaproc.services.job_registry import ActiveJob, JobRegistry, JobState
from mediaproc.services.temp_store import (
    DanglingJob,
    ProcessedFile,
    SourceFile,
    TempFileStore,
    TempStorageStats,
    validate_job_identity,
)
from mediaproc.services.transcoder import ProgressCallback, Quality, SegmentTranscoder

logger = logging.getLogger(__name__)


@dataclass
class ProcessOptions:
    """Per-call options for TranscodeService.process()."""

    on_progress: Optional[ProgressCallback] = None
    cancel_event: Optional[asyncio.Event] = None
    force_convert: bool = False
    quality: Quality = Quality.MEDIUM


@dataclass
class ProcessingResult:
    """Returned to the caller when a job completes."""

    file_id: str
    namespace: list[str]
    output_path: Path
    was_converted: bool
    size: int
    duration: float
    width: int
    height: int
    codec: str
    segment_count: int = 0


class TranscodeService:
    """Runs transcode jobs and exposes their temp files for recovery."""

    def __init__(
        self,
        store: TempFileStore,
        transcoder: SegmentTranscoder,
        registry: Optional[JobRegistry] = None,
        heartbeat_interval_seconds: float = 30,
        default_max_age_hours: float = 24,
    ):
        self.store = store
        self.transcoder = transcoder
        self.registry = registry or JobRegistry()
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.default_max_age_hours = default_max_age_hours

    @property
    def hwaccel(self) -> HardwareAccelerationDetector:
        return self.transcoder.hwaccel

    async def process(
        self,
        file_id: str,
        namespace: list[str],
        source: SourceFile,
        options: Optional[ProcessOptions] = None,
    ) -> ProcessingResult:
        """Transcode a source into the job's canonical output.

        Blocks until the job reaches a terminal state. On failure or
        cancellation the temp directory is left in place for recovery.

        Raises:
            AlreadyProcessingError: The key is running here or in a live process
            ProbeFailedError: The source is not a usable video
            EncodeFailedError: Encoding or concatenation failed
            JobCancelledError: options.cancel_event was set
        """
        validate_job_identity(file_id, namespace)
        options = options or ProcessOptions()

        job = self.registry.register(file_id, namespace, options.cancel_event)
        logger.info(f"Processing {file_id} in namespace {'/'.join(namespace)}")

        loop = asyncio.get_running_loop()
        try:
            paths = await loop.run_in_executor(
                None, self.store.claim, file_id, namespace, source.name, source.mime_type
            )
            heartbeat = asyncio.create_task(self._heartbeat(file_id, namespace))
            try:
                await loop.run_in_executor(None, self.store.write_input, paths, source.content)
                result = await self.transcoder.transcode(
                    file_id,
                    namespace,
                    paths,
                    force_convert=options.force_convert,
                    quality=options.quality,
                    on_progress=lambda percent: self._on_progress(job, options, percent),
                    on_state=lambda state: setattr(job, "state", state),
                    cancel_event=job.cancel_event,
                )
            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass
                await self._release(file_id, namespace)
        except AlreadyProcessingError:
            raise
        except JobCancelledError:
            job.state = JobState.CANCELLED
            logger.info(f"Processing of {file_id} cancelled, temp files kept")
            raise
        except MediaProcError as e:
            job.state = JobState.FAILED
            logger.error(f"Processing of {file_id} failed: {e.message}")
            raise
        finally:
            self.registry.unregister(file_id, namespace)

        size = result.output_path.stat().st_size
        metadata = result.metadata
        logger.info(
            f"Finished {file_id}: {size} bytes, "
            f"{'converted' if result.was_converted else 'no conversion needed'}"
        )
        return ProcessingResult(
            file_id=file_id,
            namespace=list(namespace),
            output_path=result.output_path,
            was_converted=result.was_converted,
            size=size,
            duration=metadata.duration,
            width=metadata.width,
            height=metadata.height,
            codec=metadata.codec,
            segment_count=result.segment_count,
        )

    def _on_progress(self, job: ActiveJob, options: ProcessOptions, percent: float) -> None:
        job.progress = percent
        if options.on_progress is not None:
            options.on_progress(percent)

    async def _release(self, file_id: str, namespace: list[str]) -> None:
        """Mark the lock released so a terminal job is dangling, not live."""
        try:
            await asyncio.get_running_loop().run_in_executor(
                None, self.store.release, file_id, namespace
            )
        except OSError as e:
            logger.warning(f"Failed to release lock for {file_id}: {e}")

    async def _heartbeat(self, file_id: str, namespace: list[str]) -> None:
        """Keep the lock's lease fresh while the job runs."""
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.heartbeat_interval_seconds)
            try:
                await loop.run_in_executor(None, self.store.touch_heartbeat, file_id, namespace)
            except OSError as e:
                logger.warning(f"Failed to refresh heartbeat for {file_id}: {e}")

    def fetch_output(self, file_id: str, namespace: list[str]) -> ProcessedFile:
        """Open the canonical output. The caller closes the stream.

        Raises:
            NotFoundError: If the job has no output
        """
        return self.store.output(file_id, namespace)

    def list_dangling(self, namespace: list[str]) -> list[DanglingJob]:
        """Jobs in a namespace whose owner is gone. Call once per namespace at startup."""
        return self.store.list_dangling(namespace)

    def cleanup(self, file_id: str, namespace: list[str]) -> None:
        """Delete a job's temp files once its output has been persisted.

        Raises:
            StillProcessingError: If the job is still running in this process
        """
        if self.registry.is_registered(file_id, namespace):
            raise StillProcessingError(file_id, namespace)
        self.store.cleanup(file_id, namespace)

    def sweep(self, max_age_seconds: Optional[float] = None) -> int:
        """Delete dangling jobs older than max_age_seconds. Returns count removed."""
        if max_age_seconds is None:
            max_age_seconds = self.default_max_age_hours * 3600
        return self.store.sweep_older_than(timedelta(seconds=max_age_seconds))

    def is_processing(self, file_id: str, namespace: list[str]) -> bool:
        return self.registry.is_registered(file_id, namespace)

    def get_progress(self, file_id: str, namespace: list[str]) -> Optional[float]:
        job = self.registry.get(file_id, namespace)
        return job.progress if job is not None else None

    def cancel(self, file_id: str, namespace: list[str]) -> bool:
        return self.registry.cancel(file_id, namespace)

    def active_jobs(self) -> list[ActiveJob]:
        return self.registry.active_jobs()

    def list_namespaces(self) -> list[list[str]]:
        return self.store.list_namespaces()

    def get_stats(self) -> TempStorageStats:
        return self.store.get_stats()

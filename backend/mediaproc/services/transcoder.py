"""Segmented H.264 transcoding with per-segment hardware fallback.

A job moves through::

    PROBING -> NO_CONVERSION_NEEDED -> DONE
    PROBING -> CONVERTING -> CONCATENATING -> DONE
    any     -> FAILED | CANCELLED

The source is cut into fixed-duration segments which are encoded one after
another. A hardware failure is retried once for that segment with the
software encoder. Finished segments are joined with a stream copy, so the
concatenation never re-encodes.
"""

import asyncio
import logging
import math
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from mediaproc.exceptions import EncodeFailedError, JobCancelledError, ProbeFailedError
from mediaproc.services.ffmpeg import run_ffmpeg
from mediaproc.services.ffprobe import VideoMetadata, probe_video
from mediaproc.services.hwaccel import (
    SOFTWARE_ENCODER,
    EncoderConfig,
    HardwareAccelerationDetector,
)
from mediaproc.services.job_registry import JobState
from mediaproc.services.temp_store import PARTIAL_OUTPUT_FILE_NAME, JobPaths

logger = logging.getLogger(__name__)

SEGMENT_DURATION = 30
CONCAT_LIST_NAME = "concat_list.txt"

ProgressCallback = Callable[[float], None]
StateCallback = Callable[[JobState], None]


class Quality(str, Enum):
    """Output quality preset."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Rate-control values appended to the encoder's quality flag
SOFTWARE_QUALITY = {Quality.LOW: 32, Quality.MEDIUM: 28, Quality.HIGH: 23}
HARDWARE_QUALITY = {Quality.LOW: 28, Quality.MEDIUM: 23, Quality.HIGH: 19}


def quality_args(encoder: EncoderConfig, quality: Quality) -> list[str]:
    table = HARDWARE_QUALITY if encoder.is_hardware else SOFTWARE_QUALITY
    return [encoder.quality_flag, str(table[quality])]


@dataclass(frozen=True)
class SegmentPlan:
    """One slice of the source."""

    index: int
    start: float
    duration: float

    @property
    def filename(self) -> str:
        return f"segment_{self.index:03d}.mp4"


def plan_segments(total_duration: float, segment_duration: float = SEGMENT_DURATION) -> list[SegmentPlan]:
    """Split a duration into consecutive fixed-length segments.

    The last segment is min(segment_duration, total_duration - start).

    Raises:
        ValueError: If either duration is not positive
    """
    if total_duration <= 0:
        raise ValueError(f"Cannot segment a source of duration {total_duration}")
    if segment_duration <= 0:
        raise ValueError(f"Invalid segment duration {segment_duration}")

    # Tolerate float noise such as 90.0000000001 / 30
    count = max(1, math.ceil(total_duration / segment_duration - 1e-9))
    plans = []
    for index in range(count):
        start = index * segment_duration
        plans.append(
            SegmentPlan(
                index=index,
                start=start,
                duration=min(segment_duration, total_duration - start),
            )
        )
    return plans


@dataclass
class TranscodeResult:
    """What the transcoder produced."""

    output_path: Path
    was_converted: bool
    metadata: VideoMetadata
    segment_count: int = 0
    software_segments: int = 0
    encoder: Optional[str] = None


class _SegmentAttemptFailed(Exception):
    """One encoder attempt at one segment failed."""


class _ProgressReporter:
    """Clamps progress to [0, 100] and never lets it go backwards."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback
        self.last: Optional[float] = None

    def emit(self, percent: float) -> None:
        percent = min(max(percent, 0.0), 100.0)
        if self.last is not None and percent <= self.last:
            return
        self.last = percent
        if self._callback is None:
            return
        try:
            self._callback(percent)
        except Exception as e:
            logger.warning(f"Progress callback error: {e}")


class SegmentTranscoder:
    """Converts one local input file into the job's canonical output."""

    def __init__(
        self,
        hwaccel: HardwareAccelerationDetector,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        probe_timeout: float = 30.0,
        segment_duration: float = SEGMENT_DURATION,
    ):
        self.hwaccel = hwaccel
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.probe_timeout = probe_timeout
        self.segment_duration = segment_duration

    async def probe(self, path: Path) -> VideoMetadata:
        return await probe_video(path, self.ffprobe_path, self.probe_timeout)

    async def transcode(
        self,
        file_id: str,
        namespace: list[str],
        paths: JobPaths,
        force_convert: bool = False,
        quality: Quality = Quality.MEDIUM,
        on_progress: Optional[ProgressCallback] = None,
        on_state: Optional[StateCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TranscodeResult:
        """Run the job's state machine to completion.

        Args:
            file_id: Job fileId, used in errors and logs
            namespace: Job namespace, used in errors and logs
            paths: Directory layout from TempFileStore
            force_convert: Re-encode even if the source is already H.264
            quality: Rate-control preset
            on_progress: Receives 0-100, monotonically
            on_state: Receives every state transition
            cancel_event: Aborts the job when set

        Raises:
            ProbeFailedError: Source unreadable, without video, or zero length
            EncodeFailedError: Software fallback or concatenation failed
            JobCancelledError: cancel_event was set
        """

        def set_state(state: JobState) -> None:
            logger.debug(f"{file_id}: {state.value}")
            if on_state is not None:
                on_state(state)

        reporter = _ProgressReporter(on_progress)

        set_state(JobState.PROBING)
        metadata = await self.probe(paths.input_path)

        if metadata.duration <= 0:
            raise ProbeFailedError(paths.input_path, "Source has zero duration")

        if metadata.is_h264 and not force_convert:
            set_state(JobState.NO_CONVERSION_NEEDED)
            logger.info(f"{file_id} is already H.264, skipping conversion")
            await asyncio.get_running_loop().run_in_executor(
                None, self._publish_copy, paths.input_path, paths
            )
            reporter.emit(100.0)
            set_state(JobState.DONE)
            return TranscodeResult(
                output_path=paths.output_path,
                was_converted=False,
                metadata=metadata,
            )

        set_state(JobState.CONVERTING)
        plans = plan_segments(metadata.duration, self.segment_duration)
        # Cached after the first job
        encoder = (await self.hwaccel.detect()).selected
        logger.info(
            f"Converting {file_id} from {metadata.codec} to H.264: "
            f"{len(plans)} segments, encoder {encoder.codec}"
        )

        paths.segments_dir.mkdir(parents=True, exist_ok=True)
        reporter.emit(0.0)

        software_segments = 0
        for plan in plans:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError(file_id, namespace)

            used_hardware = await self._encode_with_fallback(
                file_id, namespace, paths, plan, len(plans), encoder, quality, reporter, cancel_event
            )
            if not used_hardware:
                software_segments += 1
            reporter.emit((plan.index + 1) / len(plans) * 100)

        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelledError(file_id, namespace)

        set_state(JobState.CONCATENATING)
        await self._concatenate(paths, plans)

        shutil.rmtree(paths.segments_dir, ignore_errors=True)
        reporter.emit(100.0)
        set_state(JobState.DONE)
        logger.info(
            f"Converted {file_id}: {len(plans)} segments "
            f"({software_segments} in software)"
        )

        return TranscodeResult(
            output_path=paths.output_path,
            was_converted=True,
            metadata=metadata,
            segment_count=len(plans),
            software_segments=software_segments,
            encoder=encoder.codec,
        )

    async def _encode_with_fallback(
        self,
        file_id: str,
        namespace: list[str],
        paths: JobPaths,
        plan: SegmentPlan,
        total_segments: int,
        encoder: EncoderConfig,
        quality: Quality,
        reporter: _ProgressReporter,
        cancel_event: Optional[asyncio.Event],
    ) -> bool:
        """Encode one segment. Returns True if the hardware attempt succeeded."""
        segment_path = paths.segments_dir / plan.filename

        def on_time(seconds: float) -> None:
            fraction = min(seconds / plan.duration, 1.0) if plan.duration > 0 else 0.0
            reporter.emit((plan.index + fraction) / total_segments * 100)

        if encoder.is_hardware:
            try:
                await self._encode_segment(
                    file_id, namespace, paths.input_path, segment_path, plan,
                    encoder, quality, on_time, cancel_event,
                )
                return True
            except _SegmentAttemptFailed as e:
                logger.warning(
                    f"Hardware encode failed for segment {plan.index} of {file_id}, "
                    f"falling back to software: {e}"
                )
                segment_path.unlink(missing_ok=True)

        try:
            await self._encode_segment(
                file_id, namespace, paths.input_path, segment_path, plan,
                SOFTWARE_ENCODER, quality, on_time, cancel_event,
            )
        except _SegmentAttemptFailed as e:
            logger.error(f"Software encode failed for segment {plan.index} of {file_id}: {e}")
            raise EncodeFailedError(plan.index, str(e)) from e
        return False

    async def _encode_segment(
        self,
        file_id: str,
        namespace: list[str],
        input_path: Path,
        segment_path: Path,
        plan: SegmentPlan,
        encoder: EncoderConfig,
        quality: Quality,
        on_time: Callable[[float], None],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        args = [
            *encoder.input_flags,
            "-ss", f"{plan.start:.3f}",
            "-i", str(input_path),
            "-t", f"{plan.duration:.3f}",
            "-c:v", encoder.codec,
            *encoder.output_flags,
            *quality_args(encoder, quality),
            "-c:a", "aac",
            "-f", "mp4",
            "-movflags", "+faststart",
            str(segment_path),
        ]
        result = await run_ffmpeg(
            args,
            ffmpeg_path=self.ffmpeg_path,
            on_time=on_time,
            cancel_event=cancel_event,
        )
        if result.cancelled:
            raise JobCancelledError(file_id, namespace)
        if not result.ok:
            raise _SegmentAttemptFailed(result.error_summary())
        if not segment_path.is_file():
            raise _SegmentAttemptFailed("ffmpeg produced no segment file")

    async def _concatenate(self, paths: JobPaths, plans: list[SegmentPlan]) -> None:
        """Stream-copy the segments, in split order, into the canonical output."""
        list_path = paths.segments_dir / CONCAT_LIST_NAME
        list_path.write_text(
            "".join(f"file '{plan.filename}'\n" for plan in plans),
            encoding="utf-8",
        )

        part_path = paths.temp_dir / PARTIAL_OUTPUT_FILE_NAME
        args = [
            "-f", "concat",
            "-safe", "0",
            "-i", str(list_path),
            "-c", "copy",
            "-f", "mp4",
            "-movflags", "+faststart",
            str(part_path),
        ]
        result = await run_ffmpeg(args, ffmpeg_path=self.ffmpeg_path)
        if not result.ok or not part_path.is_file():
            part_path.unlink(missing_ok=True)
            raise EncodeFailedError(None, result.error_summary())

        os.replace(part_path, paths.output_path)

    def _publish_copy(self, source: Path, paths: JobPaths) -> None:
        """Copy the input byte-for-byte to the canonical output."""
        part_path = paths.temp_dir / PARTIAL_OUTPUT_FILE_NAME
        shutil.copyfile(source, part_path)
        os.replace(part_path, paths.output_path)

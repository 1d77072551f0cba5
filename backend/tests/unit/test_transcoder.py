"""Unit tests for SegmentTranscoder and segment planning."""

import asyncio
from pathlib import Path
from typing import Callable, Optional, Sequence
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mediaproc.config import Settings
from mediaproc.exceptions import EncodeFailedError, JobCancelledError, ProbeFailedError
from mediaproc.main import build_services
from mediaproc.services.ffmpeg import FFmpegResult
from mediaproc.services.ffprobe import VideoMetadata
from mediaproc.services.hwaccel import (
    NVENC_ENCODER,
    SOFTWARE_ENCODER,
    DetectionResult,
    EncoderConfig,
    HardwareAccelerationDetector,
)
from mediaproc.services.job_registry import JobState
from mediaproc.services.temp_store import JobPaths, SourceFile, TempFileStore
from mediaproc.services.transcoder import (
    Quality,
    SegmentTranscoder,
    plan_segments,
    quality_args,
)


def make_metadata(duration: float = 95.0, codec: str = "hevc") -> VideoMetadata:
    return VideoMetadata(
        duration=duration,
        width=1920,
        height=1080,
        codec=codec,
        format="mov,mp4,m4a,3gp,3g2,mj2",
    )


class FakeFFmpeg:
    """Stands in for run_ffmpeg, writing small marker files."""

    def __init__(
        self,
        fail_hardware: Sequence[int] = (),
        fail_software: Sequence[int] = (),
        cancel_at: Optional[int] = None,
        fail_concat: bool = False,
    ):
        self.fail_hardware = set(fail_hardware)
        self.fail_software = set(fail_software)
        self.cancel_at = cancel_at
        self.fail_concat = fail_concat
        self.calls: list[list[str]] = []

    @property
    def encode_calls(self) -> list[list[str]]:
        return [c for c in self.calls if "-ss" in c]

    async def __call__(
        self,
        args: Sequence[str],
        ffmpeg_path: str = "ffmpeg",
        on_time: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> FFmpegResult:
        args = list(args)
        self.calls.append(args)
        output = Path(args[-1])

        if "concat" in args:
            if self.fail_concat:
                return FFmpegResult(return_code=1, stderr="Invalid data found")
            list_path = Path(args[args.index("-i") + 1])
            names = [line.split("'")[1] for line in list_path.read_text().splitlines()]
            output.write_bytes(b"".join((list_path.parent / n).read_bytes() for n in names))
            return FFmpegResult(return_code=0, stderr="")

        codec = args[args.index("-c:v") + 1]
        index = round(float(args[args.index("-ss") + 1]) / 30)
        duration = float(args[args.index("-t") + 1])

        if self.cancel_at == index:
            if cancel_event is not None:
                cancel_event.set()
            return FFmpegResult(return_code=-9, stderr="", cancelled=True)

        if on_time is not None:
            on_time(duration / 2)
            on_time(duration)

        failing = self.fail_software if codec == "libx264" else self.fail_hardware
        if index in failing:
            return FFmpegResult(return_code=1, stderr=f"{codec}: device busy")

        output.write_bytes(f"{index}:{codec};".encode())
        return FFmpegResult(return_code=0, stderr="")


@pytest.fixture
def paths(store: TempFileStore) -> JobPaths:
    return store.begin("vid-1", ["capsules"], "clip.mov", "video/quicktime", b"source bytes")


def make_transcoder(encoder: EncoderConfig = NVENC_ENCODER) -> SegmentTranscoder:
    detector = MagicMock(spec=HardwareAccelerationDetector)
    detector.detect = AsyncMock(return_value=DetectionResult(selected=encoder))
    return SegmentTranscoder(detector)


async def run_transcode(
    paths: JobPaths,
    ffmpeg: FakeFFmpeg,
    metadata: VideoMetadata,
    encoder: EncoderConfig = NVENC_ENCODER,
    **kwargs,
):
    transcoder = make_transcoder(encoder)
    with patch("mediaproc.services.transcoder.run_ffmpeg", new=ffmpeg), patch(
        "mediaproc.services.transcoder.probe_video",
        new=AsyncMock(return_value=metadata),
    ):
        return await transcoder.transcode("vid-1", ["capsules"], paths, **kwargs)


class TestPlanSegments:
    """Tests for segment math."""

    def test_ninety_five_seconds(self) -> None:
        """95s splits into 30/30/30/5 starting at 0/30/60/90."""
        plans = plan_segments(95, 30)

        assert [p.duration for p in plans] == [30, 30, 30, 5]
        assert [p.start for p in plans] == [0, 30, 60, 90]
        assert [p.index for p in plans] == [0, 1, 2, 3]
        assert plans[0].filename == "segment_000.mp4"

    def test_exact_multiple(self) -> None:
        """A duration that divides evenly has no short tail segment."""
        assert [p.duration for p in plan_segments(90, 30)] == [30, 30, 30]

    def test_short_source(self) -> None:
        """A source shorter than one segment is a single segment."""
        plans = plan_segments(0.5, 30)
        assert len(plans) == 1
        assert plans[0].duration == 0.5

    def test_zero_duration_is_an_error(self) -> None:
        """Zero-length sources are rejected."""
        with pytest.raises(ValueError):
            plan_segments(0, 30)


class TestQualityArgs:
    """Tests for quality presets."""

    def test_software_presets(self) -> None:
        """Software presets use -crf."""
        assert quality_args(SOFTWARE_ENCODER, Quality.LOW) == ["-crf", "32"]
        assert quality_args(SOFTWARE_ENCODER, Quality.MEDIUM) == ["-crf", "28"]
        assert quality_args(SOFTWARE_ENCODER, Quality.HIGH) == ["-crf", "23"]

    def test_hardware_presets(self) -> None:
        """Hardware presets use the encoder's own flag."""
        assert quality_args(NVENC_ENCODER, Quality.HIGH) == ["-cq", "19"]
        assert quality_args(NVENC_ENCODER, Quality.MEDIUM) == ["-cq", "23"]


class TestConversion:
    """Tests for the segmented conversion path."""

    async def test_hardware_failure_falls_back_for_that_segment(
        self, paths: JobPaths
    ) -> None:
        """Segment 2 of 4 failing on hardware is re-encoded in software only."""
        ffmpeg = FakeFFmpeg(fail_hardware=[1])

        result = await run_transcode(paths, ffmpeg, make_metadata(95))

        assert result.was_converted is True
        assert result.segment_count == 4
        assert result.software_segments == 1
        codecs = [c[c.index("-c:v") + 1] for c in ffmpeg.encode_calls]
        assert codecs == ["h264_nvenc", "h264_nvenc", "libx264", "h264_nvenc", "h264_nvenc"]
        assert paths.output_path.read_bytes() == (
            b"0:h264_nvenc;1:libx264;2:h264_nvenc;3:h264_nvenc;"
        )

    async def test_concatenation_is_stream_copy(self, paths: JobPaths) -> None:
        """The final step copies streams in split order."""
        ffmpeg = FakeFFmpeg()

        await run_transcode(paths, ffmpeg, make_metadata(95))

        concat = ffmpeg.calls[-1]
        assert concat[:4] == ["-f", "concat", "-safe", "0"]
        assert concat[concat.index("-c") + 1] == "copy"
        assert "-c:v" not in concat
        assert not paths.segments_dir.exists()
        assert not (paths.temp_dir / "output.part.mp4").exists()

    async def test_segment_arguments(self, paths: JobPaths) -> None:
        """Each segment seeks to its start and is limited to its length."""
        ffmpeg = FakeFFmpeg()

        await run_transcode(paths, ffmpeg, make_metadata(95), quality=Quality.HIGH)

        calls = ffmpeg.encode_calls
        assert [c[c.index("-ss") + 1] for c in calls] == ["0.000", "30.000", "60.000", "90.000"]
        assert [c[c.index("-t") + 1] for c in calls] == ["30.000", "30.000", "30.000", "5.000"]
        assert calls[0][:2] == ["-hwaccel", "cuda"]
        assert calls[0][calls[0].index("-cq") + 1] == "19"
        assert calls[0][-1] == str(paths.segments_dir / "segment_000.mp4")

    async def test_software_only_host(self, paths: JobPaths) -> None:
        """Without hardware every segment goes straight to libx264."""
        ffmpeg = FakeFFmpeg()

        result = await run_transcode(paths, ffmpeg, make_metadata(45), encoder=SOFTWARE_ENCODER)

        assert result.software_segments == 2
        codecs = {c[c.index("-c:v") + 1] for c in ffmpeg.encode_calls}
        assert codecs == {"libx264"}
        assert len(ffmpeg.encode_calls) == 2

    async def test_software_failure_fails_job(self, paths: JobPaths) -> None:
        """Hardware then software failure raises and keeps finished segments."""
        ffmpeg = FakeFFmpeg(fail_hardware=[1], fail_software=[1])

        with pytest.raises(EncodeFailedError) as exc_info:
            await run_transcode(paths, ffmpeg, make_metadata(95))

        assert exc_info.value.details["segment_index"] == 1
        assert (paths.segments_dir / "segment_000.mp4").exists()
        assert not paths.output_path.exists()
        # No third attempt and no later segments
        assert len(ffmpeg.encode_calls) == 3

    async def test_concat_failure(self, paths: JobPaths) -> None:
        """A failed concatenation raises EncodeFailedError without a segment index."""
        ffmpeg = FakeFFmpeg(fail_concat=True)

        with pytest.raises(EncodeFailedError) as exc_info:
            await run_transcode(paths, ffmpeg, make_metadata(60))

        assert exc_info.value.details["segment_index"] is None
        assert not paths.output_path.exists()
        assert (paths.segments_dir / "segment_001.mp4").exists()

    async def test_zero_duration_is_probe_failure(self, paths: JobPaths) -> None:
        """A zero-length source fails instead of producing nothing."""
        ffmpeg = FakeFFmpeg()

        with pytest.raises(ProbeFailedError):
            await run_transcode(paths, ffmpeg, make_metadata(0))

        assert ffmpeg.calls == []

    async def test_probe_failure_propagates(self, paths: JobPaths) -> None:
        """Probe errors reach the caller unchanged."""
        transcoder = make_transcoder()
        with patch(
            "mediaproc.services.transcoder.probe_video",
            new=AsyncMock(side_effect=ProbeFailedError(paths.input_path, "No video stream found")),
        ):
            with pytest.raises(ProbeFailedError):
                await transcoder.transcode("vid-1", ["capsules"], paths)


class TestNoConversion:
    """Tests for the already-H.264 pass-through."""

    async def test_h264_source_is_copied(self, paths: JobPaths) -> None:
        """An H.264 source is copied byte-for-byte without encoding."""
        ffmpeg = FakeFFmpeg()
        progress: list[float] = []

        result = await run_transcode(
            paths, ffmpeg, make_metadata(codec="h264"), on_progress=progress.append
        )

        assert result.was_converted is False
        assert paths.output_path.read_bytes() == paths.input_path.read_bytes()
        assert ffmpeg.calls == []
        assert progress == [100.0]

    async def test_zero_duration_h264_is_probe_failure(self, paths: JobPaths) -> None:
        """A zero-length H.264 source is rejected rather than copied."""
        with pytest.raises(ProbeFailedError):
            await run_transcode(paths, FakeFFmpeg(), make_metadata(0, codec="h264"))

        assert not paths.output_path.exists()

    async def test_force_convert_reencodes_h264(self, paths: JobPaths) -> None:
        """forceConvert re-encodes even an H.264 source."""
        ffmpeg = FakeFFmpeg()

        result = await run_transcode(
            paths, ffmpeg, make_metadata(20, codec="h264"), force_convert=True
        )

        assert result.was_converted is True
        assert len(ffmpeg.encode_calls) == 1


class TestProgressAndState:
    """Tests for progress reporting and state transitions."""

    async def test_progress_is_monotonic(self, paths: JobPaths) -> None:
        """Progress climbs from 0 to 100 and never goes back."""
        ffmpeg = FakeFFmpeg(fail_hardware=[2])
        progress: list[float] = []

        await run_transcode(paths, ffmpeg, make_metadata(95), on_progress=progress.append)

        assert progress[0] == 0.0
        assert progress[-1] == 100.0
        assert progress == sorted(progress)
        assert all(0.0 <= p <= 100.0 for p in progress)
        # Half of segment 1 of 4
        assert 37.5 in progress

    async def test_progress_callback_errors_are_ignored(self, paths: JobPaths) -> None:
        """A raising progress callback does not stop the encode."""
        ffmpeg = FakeFFmpeg()
        callback = MagicMock(side_effect=RuntimeError("ui gone"))

        result = await run_transcode(paths, ffmpeg, make_metadata(40), on_progress=callback)

        assert result.was_converted is True
        assert callback.called

    async def test_state_transitions(self, paths: JobPaths) -> None:
        """Conversion walks PROBING, CONVERTING, CONCATENATING, DONE."""
        states: list[JobState] = []

        await run_transcode(paths, FakeFFmpeg(), make_metadata(40), on_state=states.append)

        assert states == [
            JobState.PROBING,
            JobState.CONVERTING,
            JobState.CONCATENATING,
            JobState.DONE,
        ]

    async def test_no_conversion_states(self, paths: JobPaths) -> None:
        """Pass-through walks PROBING, NO_CONVERSION_NEEDED, DONE."""
        states: list[JobState] = []

        await run_transcode(
            paths, FakeFFmpeg(), make_metadata(codec="avc1"), on_state=states.append
        )

        assert states == [JobState.PROBING, JobState.NO_CONVERSION_NEEDED, JobState.DONE]


class TestCancellation:
    """Tests for job cancellation."""

    async def test_cancel_before_start(self, paths: JobPaths) -> None:
        """A pre-set cancel event stops the job before any encode."""
        ffmpeg = FakeFFmpeg()
        event = asyncio.Event()
        event.set()

        with pytest.raises(JobCancelledError):
            await run_transcode(paths, ffmpeg, make_metadata(95), cancel_event=event)

        assert ffmpeg.calls == []

    async def test_cancel_mid_encode(self, paths: JobPaths) -> None:
        """Killing the in-flight encode cancels without software fallback."""
        ffmpeg = FakeFFmpeg(cancel_at=1)
        event = asyncio.Event()

        with pytest.raises(JobCancelledError):
            await run_transcode(paths, ffmpeg, make_metadata(95), cancel_event=event)

        assert len(ffmpeg.encode_calls) == 2
        assert (paths.segments_dir / "segment_000.mp4").exists()
        assert paths.temp_dir.is_dir()
        assert not paths.output_path.exists()


class TestHardwareDetection:
    """Tests for encoder selection when jobs run through the service."""

    async def test_process_runs_detection(self, tmp_path: Path) -> None:
        """A service built without a lifespan still detects and uses the GPU."""
        services = build_services(
            Settings(
                _env_file=None,
                temp_base_path=tmp_path / "ffmpeg-temp",
                hwaccel_enabled=True,
                hwaccel_vaapi_device=str(tmp_path / "no-render-node"),
            )
        )

        async def synthetic_encode(args, **kwargs) -> FFmpegResult:
            codec = args[args.index("-c:v") + 1]
            return FFmpegResult(return_code=0 if codec == "h264_nvenc" else 1, stderr="")

        ffmpeg = FakeFFmpeg()
        with patch(
            "mediaproc.services.hwaccel.run_ffmpeg", new=AsyncMock(side_effect=synthetic_encode)
        ), patch("mediaproc.services.transcoder.run_ffmpeg", new=ffmpeg), patch(
            "mediaproc.services.transcoder.probe_video",
            new=AsyncMock(return_value=make_metadata(45)),
        ):
            result = await services.service.process(
                "vid-1",
                ["capsules"],
                SourceFile(name="clip.mov", mime_type="video/quicktime", content=b"source"),
            )

        assert services.hwaccel.detected
        assert services.hwaccel.is_available()
        assert result.was_converted
        codecs = [c[c.index("-c:v") + 1] for c in ffmpeg.encode_calls]
        assert codecs == ["h264_nvenc", "h264_nvenc"]

"""Video metadata via ffprobe."""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from mediaproc.exceptions import ProbeFailedError

logger = logging.getLogger(__name__)

# Codec names ffprobe may report for H.264 video
H264_CODEC_NAMES = frozenset({"h264", "avc1", "avc"})


@dataclass
class VideoMetadata:
    """Properties of the first video stream of a file."""

    duration: float
    width: int
    height: int
    codec: str
    format: str
    bitrate: Optional[int] = None
    fps: Optional[float] = None

    @property
    def is_h264(self) -> bool:
        return self.codec.lower() in H264_CODEC_NAMES


def _parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """Parse ffprobe's "30000/1001" style rate."""
    if not value:
        return None
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            if float(den) == 0:
                return None
            return float(num) / float(den)
        return float(value)
    except ValueError:
        return None


def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_probe_output(path: Path, data: dict[str, Any]) -> VideoMetadata:
    """Build VideoMetadata from ffprobe's JSON output.

    Raises:
        ProbeFailedError: If there is no video stream
    """
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise ProbeFailedError(path, "No video stream found")

    fmt = data.get("format") or {}

    try:
        duration = float(fmt.get("duration") or video.get("duration") or 0)
    except ValueError:
        duration = 0.0

    # Get bitrate from stream or fall back to format bitrate
    bitrate = _parse_int(video.get("bit_rate")) or _parse_int(fmt.get("bit_rate"))

    return VideoMetadata(
        duration=duration,
        width=_parse_int(video.get("width")) or 0,
        height=_parse_int(video.get("height")) or 0,
        codec=(video.get("codec_name") or "unknown").lower(),
        format=fmt.get("format_name") or "unknown",
        bitrate=bitrate,
        fps=_parse_frame_rate(video.get("avg_frame_rate") or video.get("r_frame_rate")),
    )


async def probe_video(
    path: Path,
    ffprobe_path: str = "ffprobe",
    timeout: float = 30.0,
) -> VideoMetadata:
    """Run ffprobe on a file.

    Args:
        path: Video file to inspect
        ffprobe_path: ffprobe executable
        timeout: Seconds before the probe is killed

    Returns:
        VideoMetadata for the first video stream

    Raises:
        ProbeFailedError: If ffprobe fails, times out or finds no video
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise ProbeFailedError(path, f"Cannot run ffprobe: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ProbeFailedError(path, f"ffprobe timed out after {timeout}s") from None

    if proc.returncode != 0:
        message = stderr.decode(errors="replace").strip()[:500]
        raise ProbeFailedError(path, message or f"ffprobe exited with {proc.returncode}")

    try:
        data = json.loads(stdout.decode(errors="replace") or "{}")
    except json.JSONDecodeError as e:
        raise ProbeFailedError(path, f"Unreadable ffprobe output: {e}") from e

    metadata = parse_probe_output(path, data)
    logger.debug(
        f"Probed {path.name}: {metadata.codec} {metadata.width}x{metadata.height}, "
        f"{metadata.duration:.2f}s"
    )
    return metadata

"""Hardware encoder detection.

Candidates are tried once, in priority order, with a tiny synthetic encode:

- VAAPI (Intel/AMD GPUs on Linux)
- NVENC (NVIDIA GPUs)
- QSV (Intel Quick Sync Video)

The first one that works is cached for the life of the detector. If none
does, the software encoder is used.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from mediaproc.services.ffmpeg import run_ffmpeg

logger = logging.getLogger(__name__)

DEFAULT_VAAPI_DEVICE = "/dev/dri/renderD128"
# NVENC rejects frames smaller than 256x256
SYNTHETIC_SOURCE = "color=c=black:s=256x256:d=0.1"


class EncoderType(str, Enum):
    """Encoder family."""

    VAAPI = "vaapi"
    NVENC = "nvenc"
    QSV = "qsv"
    SOFTWARE = "software"


@dataclass(frozen=True)
class EncoderConfig:
    """Flags handed verbatim to ffmpeg for one encoder."""

    encoder_type: EncoderType
    codec: str
    input_flags: tuple[str, ...] = ()
    output_flags: tuple[str, ...] = ()
    quality_flag: str = "-crf"
    device: Optional[str] = None

    @property
    def is_hardware(self) -> bool:
        return self.encoder_type != EncoderType.SOFTWARE

    def to_dict(self) -> dict:
        return {
            "type": self.encoder_type.value,
            "codec": self.codec,
            "device": self.device,
            "input_flags": list(self.input_flags),
            "output_flags": list(self.output_flags),
            "quality_flag": self.quality_flag,
        }


# Conservative flags for low-resource, predictable encodes
SOFTWARE_ENCODER = EncoderConfig(
    encoder_type=EncoderType.SOFTWARE,
    codec="libx264",
    output_flags=(
        "-preset", "ultrafast",
        "-threads", "2",
        "-bufsize", "1M",
        "-maxrate", "2M",
    ),
    quality_flag="-crf",
)


def vaapi_encoder(device: str = DEFAULT_VAAPI_DEVICE) -> EncoderConfig:
    return EncoderConfig(
        encoder_type=EncoderType.VAAPI,
        codec="h264_vaapi",
        input_flags=(
            "-vaapi_device", device,
            "-hwaccel", "vaapi",
            "-hwaccel_output_format", "vaapi",
        ),
        # Frames decoded in software still need uploading to the GPU
        output_flags=("-vf", "format=nv12|vaapi,hwupload"),
        quality_flag="-qp",
        device=device,
    )


NVENC_ENCODER = EncoderConfig(
    encoder_type=EncoderType.NVENC,
    codec="h264_nvenc",
    input_flags=("-hwaccel", "cuda"),
    output_flags=("-preset", "fast"),
    quality_flag="-cq",
)

QSV_ENCODER = EncoderConfig(
    encoder_type=EncoderType.QSV,
    codec="h264_qsv",
    input_flags=("-hwaccel", "qsv"),
    output_flags=("-preset", "fast"),
    quality_flag="-global_quality",
)


def synthetic_probe_args(config: EncoderConfig) -> list[str]:
    """ffmpeg arguments that encode a sub-second solid-color clip to null."""
    args = ["-loglevel", "error"]
    if config.encoder_type == EncoderType.VAAPI:
        args.extend(["-vaapi_device", config.device or DEFAULT_VAAPI_DEVICE])
    args.extend(["-f", "lavfi", "-i", SYNTHETIC_SOURCE])
    if config.encoder_type == EncoderType.VAAPI:
        args.extend(["-vf", "format=nv12,hwupload"])
    args.extend(["-c:v", config.codec, "-f", "null", "-"])
    return args


@dataclass
class DetectionResult:
    """Outcome of hardware detection."""

    selected: EncoderConfig
    attempted: list[EncoderType] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return self.selected.is_hardware


class HardwareAccelerationDetector:
    """Finds a working hardware H.264 encoder, once."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        vaapi_device: str = DEFAULT_VAAPI_DEVICE,
        probe_timeout: float = 5.0,
        enabled: bool = True,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.vaapi_device = vaapi_device
        self.probe_timeout = probe_timeout
        self.enabled = enabled
        self._result: Optional[DetectionResult] = None
        self._lock = asyncio.Lock()

    def candidates(self) -> list[EncoderConfig]:
        """Hardware encoders in priority order."""
        return [vaapi_encoder(self.vaapi_device), NVENC_ENCODER, QSV_ENCODER]

    @property
    def detected(self) -> bool:
        return self._result is not None

    async def detect(self) -> DetectionResult:
        """Probe candidates and cache the winner. Later calls return the cache."""
        async with self._lock:
            if self._result is not None:
                return self._result

            if not self.enabled:
                logger.info("Hardware acceleration disabled, using software encoding")
                self._result = DetectionResult(selected=SOFTWARE_ENCODER)
                return self._result

            logger.info("Checking hardware acceleration availability...")
            attempted: list[EncoderType] = []
            for candidate in self.candidates():
                attempted.append(candidate.encoder_type)
                if await self._probe(candidate):
                    logger.info(f"Hardware acceleration available: {candidate.encoder_type.value}")
                    self._result = DetectionResult(selected=candidate, attempted=attempted)
                    return self._result

            logger.warning("No hardware acceleration available - will use software encoding")
            self._result = DetectionResult(selected=SOFTWARE_ENCODER, attempted=attempted)
            return self._result

    async def _probe(self, candidate: EncoderConfig) -> bool:
        if candidate.encoder_type == EncoderType.VAAPI and not os.path.exists(
            candidate.device or DEFAULT_VAAPI_DEVICE
        ):
            logger.debug(f"VAAPI device not present: {candidate.device}")
            return False

        result = await run_ffmpeg(
            synthetic_probe_args(candidate),
            ffmpeg_path=self.ffmpeg_path,
            timeout=self.probe_timeout,
        )
        if not result.ok:
            logger.debug(
                f"{candidate.encoder_type.value} not available: {result.error_summary(200)}"
            )
        return result.ok

    def is_available(self) -> bool:
        """True if a hardware encoder was detected."""
        return self._result is not None and self._result.available

    def config(self) -> EncoderConfig:
        """Selected encoder; software until detection has run."""
        if self._result is None:
            return SOFTWARE_ENCODER
        return self._result.selected

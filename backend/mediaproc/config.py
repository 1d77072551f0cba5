"""Application configuration using pydantic-settings."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Temp storage
    temp_base_path: Path = Path("./.ffmpeg-temp")
    temp_max_age_hours: int = 24
    namespace_scan_max_depth: int = 16

    # External binaries
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    probe_timeout_seconds: float = 30.0

    # Segmented transcoding
    segment_duration_seconds: int = 30

    # Hardware acceleration
    hwaccel_enabled: bool = True
    hwaccel_vaapi_device: str = "/dev/dri/renderD128"
    hwaccel_probe_timeout_seconds: float = 5.0

    # Lock lease: running jobs rewrite lastHeartbeatAt every interval,
    # locks older than the grace window are treated as dangling
    lock_heartbeat_interval_seconds: int = 30
    lock_heartbeat_grace_seconds: Optional[int] = 120

    # Periodic sweep (disabled unless set)
    sweep_interval_minutes: Optional[int] = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Application
    app_name: str = "mediaproc"
    api_prefix: str = "/api"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

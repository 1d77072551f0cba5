"""Versioned on-disk format of a job's .lock file.

The lock record is the sole source of truth for crash recovery, so its
format carries an explicit schemaVersion. Readers reject versions newer than
LOCK_SCHEMA_VERSION instead of guessing at renamed fields.
"""

from datetime import datetime
from typing import Optional

from pydantic import Field, field_validator

from mediaproc.schemas.base import CamelModel, UTCDateTime
from mediaproc.utils.timezone import ensure_utc

LOCK_SCHEMA_VERSION = 1


class LockRecord(CamelModel):
    """Proof of ownership and recovery metadata for one job."""

    schema_version: int = LOCK_SCHEMA_VERSION
    file_id: str
    namespace: list[str]
    original_name: str
    mime_type: str = "video/mp4"
    started_at: UTCDateTime
    owner_process_id: int = Field(ge=0)
    owner_hostname: Optional[str] = None
    last_heartbeat_at: Optional[UTCDateTime] = None
    # Set when the owning job reached a terminal state
    released_at: Optional[UTCDateTime] = None

    @field_validator("started_at", "last_heartbeat_at", "released_at")
    @classmethod
    def _normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)

    @property
    def heartbeat_at(self) -> datetime:
        """Most recent sign of life; locks without a heartbeat fall back to start."""
        return self.last_heartbeat_at or self.started_at

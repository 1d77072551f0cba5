"""Pydantic schemas for mediaproc."""

from mediaproc.schemas.base import CamelModel, UTCDateTime
from mediaproc.schemas.lock import LOCK_SCHEMA_VERSION, LockRecord

__all__ = ["CamelModel", "UTCDateTime", "LOCK_SCHEMA_VERSION", "LockRecord"]

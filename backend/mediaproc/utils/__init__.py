"""Utility functions for mediaproc."""

from mediaproc.utils.timezone import ensure_utc, seconds_since, to_utc_isoformat, utc_now

__all__ = ["utc_now", "ensure_utc", "to_utc_isoformat", "seconds_since"]

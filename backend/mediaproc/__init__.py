"""mediaproc - crash-recoverable temp-file and segmented transcoding core."""

__version__ = "0.1.0"

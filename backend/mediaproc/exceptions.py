"""
Exception classes for the transcoding core.

Every failure surfaced to a caller of TranscodeService derives from
MediaProcError. Hardware encode failures are recovered internally by the
software fallback and never appear here.
"""

from typing import Optional


def format_namespace(namespace: list[str]) -> str:
    """Render a namespace the way it appears on disk."""
    return "/".join(namespace)


class MediaProcError(Exception):
    """Base exception for all mediaproc errors"""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class AlreadyProcessingError(MediaProcError):
    """Raised when a live job already exists for (namespace, fileId)"""

    def __init__(self, file_id: str, namespace: list[str]):
        details = {"file_id": file_id, "namespace": list(namespace)}
        super().__init__(
            f"File {file_id} is already being processed in namespace "
            f"{format_namespace(namespace)}",
            details,
        )


class StillProcessingError(MediaProcError):
    """Raised when cleanup is requested for a job that is still registered"""

    def __init__(self, file_id: str, namespace: list[str]):
        details = {"file_id": file_id, "namespace": list(namespace)}
        super().__init__(f"Cannot cleanup {file_id} - still processing", details)


class NotFoundError(MediaProcError):
    """Raised when an input or output artifact does not exist"""

    def __init__(self, file_id: str, namespace: list[str], what: str = "output"):
        details = {"file_id": file_id, "namespace": list(namespace), "what": what}
        super().__init__(
            f"No {what} found for {file_id} in namespace {format_namespace(namespace)}",
            details,
        )


class ProbeFailedError(MediaProcError):
    """Raised when the source cannot be probed or is not a usable video"""

    def __init__(self, path, reason: str):
        details = {"path": str(path), "reason": reason}
        super().__init__(f"Failed to get video metadata for {path}: {reason}", details)


class EncodeFailedError(MediaProcError):
    """Raised when both hardware and software attempts fail for a segment,
    or when the final stream-copy concatenation fails"""

    def __init__(self, segment_index: Optional[int], reason: str):
        details = {"segment_index": segment_index, "reason": reason}
        if segment_index is None:
            message = f"Segment concatenation failed: {reason}"
        else:
            message = f"Encoding failed for segment {segment_index}: {reason}"
        super().__init__(message, details)


class JobCancelledError(MediaProcError):
    """Raised when a job is aborted through its cancellation handle.

    The job directory and completed segments are preserved.
    """

    def __init__(self, file_id: str, namespace: list[str]):
        details = {"file_id": file_id, "namespace": list(namespace)}
        super().__init__(f"Processing of {file_id} was cancelled", details)

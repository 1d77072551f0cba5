"""In-memory registry of jobs running in this process."""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from mediaproc.exceptions import AlreadyProcessingError
from mediaproc.utils.timezone import utc_now

logger = logging.getLogger(__name__)

JobKey = tuple[tuple[str, ...], str]


class JobState(str, Enum):
    """Lifecycle state of a transcode job."""

    PENDING = "pending"
    PROBING = "probing"
    NO_CONVERSION_NEEDED = "no_conversion_needed"
    CONVERTING = "converting"
    CONCATENATING = "concatenating"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED, JobState.CANCELLED)


def job_key(file_id: str, namespace: list[str]) -> JobKey:
    return (tuple(namespace), file_id)


@dataclass
class ActiveJob:
    """A job registered in this process."""

    file_id: str
    namespace: list[str]
    started_at: datetime = field(default_factory=utc_now)
    progress: float = 0.0
    state: JobState = JobState.PENDING
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()


class JobRegistry:
    """Per-key exclusivity and live progress for in-flight jobs.

    The registry is not the durability mechanism; the lock file is. It only
    answers "is this key running here right now" and holds the handles used
    to observe and cancel a job.
    """

    def __init__(self):
        self._active_jobs: dict[JobKey, ActiveJob] = {}
        self._lock = threading.Lock()

    def register(
        self,
        file_id: str,
        namespace: list[str],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ActiveJob:
        """Atomically insert a job.

        Args:
            file_id: Caller's file identifier
            namespace: Caller's namespace
            cancel_event: Caller-owned cancellation handle to reuse

        Raises:
            AlreadyProcessingError: If the key is already registered
        """
        key = job_key(file_id, namespace)
        with self._lock:
            if key in self._active_jobs:
                raise AlreadyProcessingError(file_id, namespace)
            job = ActiveJob(file_id=file_id, namespace=list(namespace))
            if cancel_event is not None:
                job.cancel_event = cancel_event
            self._active_jobs[key] = job
        logger.debug(f"Registered job {file_id} ({'/'.join(namespace)})")
        return job

    def unregister(self, file_id: str, namespace: list[str]) -> None:
        """Remove a job. Unknown keys are ignored."""
        with self._lock:
            self._active_jobs.pop(job_key(file_id, namespace), None)

    def get(self, file_id: str, namespace: list[str]) -> Optional[ActiveJob]:
        with self._lock:
            return self._active_jobs.get(job_key(file_id, namespace))

    def is_registered(self, file_id: str, namespace: list[str]) -> bool:
        return self.get(file_id, namespace) is not None

    def update_progress(self, file_id: str, namespace: list[str], progress: float) -> None:
        job = self.get(file_id, namespace)
        if job is not None:
            job.progress = progress

    def set_state(self, file_id: str, namespace: list[str], state: JobState) -> None:
        job = self.get(file_id, namespace)
        if job is not None:
            job.state = state

    def cancel(self, file_id: str, namespace: list[str]) -> bool:
        """Signal a job to stop.

        Returns:
            True if the job was registered
        """
        job = self.get(file_id, namespace)
        if job is None:
            return False
        job.cancel_event.set()
        logger.info(f"Cancellation requested for {file_id}")
        return True

    def active_jobs(self) -> list[ActiveJob]:
        """Snapshot of registered jobs, oldest first."""
        with self._lock:
            jobs = list(self._active_jobs.values())
        return sorted(jobs, key=lambda j: j.started_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._active_jobs)

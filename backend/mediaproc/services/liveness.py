"""Owner-process liveness checks for job lock records.

A lock is live when it has not been released, its heartbeat lease is fresh
and, for locks written on this host, the recorded owner process still
exists. The process probe never signals the target; it only consults the
process table through psutil.
"""

import logging
import os
import socket
from datetime import datetime
from typing import Optional

import psutil

from mediaproc.schemas.lock import LockRecord
from mediaproc.utils.timezone import seconds_since

logger = logging.getLogger(__name__)


def current_hostname() -> str:
    """Hostname recorded in lock files written by this process."""
    return socket.gethostname()


class ProcessLiveness:
    """Decides whether the owner of a lock record is still running."""

    def __init__(
        self,
        heartbeat_grace_seconds: Optional[int] = 120,
        hostname: Optional[str] = None,
    ):
        """Initialize the liveness checker.

        Args:
            heartbeat_grace_seconds: Maximum heartbeat age for a live lock,
                None disables the lease check and relies on the PID alone
            hostname: Name of this host (defaults to socket.gethostname())
        """
        self.heartbeat_grace_seconds = heartbeat_grace_seconds
        self.hostname = hostname or current_hostname()
        self._warned_unsupported = False

    def pid_alive(self, pid: int) -> Optional[bool]:
        """Probe the local process table.

        Returns:
            True/False when the probe worked, None when the platform cannot
            answer the question
        """
        if pid == os.getpid():
            return True
        if pid <= 0:
            return False
        try:
            return psutil.pid_exists(pid)
        except (psutil.Error, OSError, NotImplementedError) as e:
            if not self._warned_unsupported:
                logger.warning(
                    f"Process liveness probe unsupported on this host ({e}); "
                    "locks will be treated as dangling"
                )
                self._warned_unsupported = True
            return None

    def heartbeat_fresh(self, record: LockRecord, now: Optional[datetime] = None) -> bool:
        """Check the lease part of liveness."""
        if self.heartbeat_grace_seconds is None:
            return True
        return seconds_since(record.heartbeat_at, now) <= self.heartbeat_grace_seconds

    def is_live(self, record: LockRecord, now: Optional[datetime] = None) -> bool:
        """Return True iff the job owning this lock is still running."""
        if record.released_at is not None:
            return False

        if not self.heartbeat_fresh(record, now):
            return False

        if record.owner_hostname and record.owner_hostname != self.hostname:
            # A PID from another machine says nothing; the lease decides.
            return self.heartbeat_grace_seconds is not None

        alive = self.pid_alive(record.owner_process_id)
        # Unsupported probe fails open to "dangling" so recovery still runs
        return alive is True

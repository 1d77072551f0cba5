"""Unit tests for lock liveness and the lock record format."""

import json
import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import patch

import psutil
import pytest

from mediaproc.schemas.lock import LockRecord
from mediaproc.services.liveness import ProcessLiveness
from mediaproc.utils.timezone import utc_now

from conftest import DEAD_PID, TEST_HOSTNAME


def make_record(
    pid: int,
    heartbeat_age: float = 0,
    hostname: Optional[str] = TEST_HOSTNAME,
) -> LockRecord:
    now = utc_now()
    return LockRecord(
        file_id="vid-1",
        namespace=["capsules"],
        original_name="clip.mov",
        started_at=now - timedelta(seconds=heartbeat_age + 10),
        owner_process_id=pid,
        owner_hostname=hostname,
        last_heartbeat_at=now - timedelta(seconds=heartbeat_age),
    )


class TestPidProbe:
    """Tests for the process table probe."""

    def test_own_pid_is_alive(self, liveness: ProcessLiveness) -> None:
        """This process is always alive."""
        assert liveness.pid_alive(os.getpid()) is True

    def test_non_positive_pid_is_dead(self, liveness: ProcessLiveness) -> None:
        """PID 0 and negative PIDs never belong to a job."""
        assert liveness.pid_alive(0) is False
        assert liveness.pid_alive(-5) is False

    def test_missing_pid_is_dead(self, liveness: ProcessLiveness) -> None:
        """A PID that is not in the process table is dead."""
        assert liveness.pid_alive(DEAD_PID) is False

    def test_unsupported_probe_returns_none(self, liveness: ProcessLiveness) -> None:
        """A probe that raises reports 'cannot tell' and warns once."""
        with patch(
            "mediaproc.services.liveness.psutil.pid_exists",
            side_effect=psutil.AccessDenied(),
        ), patch("mediaproc.services.liveness.logger") as mock_logger:
            assert liveness.pid_alive(12345) is None
            assert liveness.pid_alive(12345) is None

        assert mock_logger.warning.call_count == 1


class TestIsLive:
    """Tests for the combined lease and PID check."""

    def test_running_owner_with_fresh_heartbeat(self, liveness: ProcessLiveness) -> None:
        """Fresh heartbeat plus running owner is live."""
        assert liveness.is_live(make_record(os.getpid())) is True

    def test_dead_owner_is_dangling(self, liveness: ProcessLiveness) -> None:
        """A dead owner is dangling even with a fresh heartbeat."""
        assert liveness.is_live(make_record(DEAD_PID)) is False

    def test_expired_lease_is_dangling(self, liveness: ProcessLiveness) -> None:
        """An old heartbeat is dangling even if the PID exists."""
        assert liveness.is_live(make_record(os.getpid(), heartbeat_age=600)) is False

    def test_lease_disabled_relies_on_pid(self) -> None:
        """With no grace window only the PID counts."""
        checker = ProcessLiveness(heartbeat_grace_seconds=None, hostname=TEST_HOSTNAME)
        assert checker.is_live(make_record(os.getpid(), heartbeat_age=86400)) is True
        assert checker.is_live(make_record(DEAD_PID)) is False

    def test_remote_host_uses_lease_only(self, liveness: ProcessLiveness) -> None:
        """A lock from another host is judged by its heartbeat alone."""
        assert liveness.is_live(make_record(DEAD_PID, hostname="elsewhere")) is True
        assert (
            liveness.is_live(make_record(os.getpid(), heartbeat_age=600, hostname="elsewhere"))
            is False
        )

    def test_remote_host_without_lease_is_dangling(self) -> None:
        """Without a lease a foreign lock cannot be proven alive."""
        checker = ProcessLiveness(heartbeat_grace_seconds=None, hostname=TEST_HOSTNAME)
        assert checker.is_live(make_record(os.getpid(), hostname="elsewhere")) is False

    def test_lock_without_hostname_checks_pid(self, liveness: ProcessLiveness) -> None:
        """Locks that predate the hostname field fall back to the PID."""
        assert liveness.is_live(make_record(os.getpid(), hostname=None)) is True

    def test_released_lock_is_dangling(self, liveness: ProcessLiveness) -> None:
        """A released lock is never live, whoever wrote it."""
        record = make_record(os.getpid())
        record.released_at = utc_now()
        assert liveness.is_live(record) is False

    def test_unsupported_probe_is_dangling(self, liveness: ProcessLiveness) -> None:
        """When the probe cannot answer, the lock is treated as dangling."""
        with patch(
            "mediaproc.services.liveness.psutil.pid_exists",
            side_effect=NotImplementedError,
        ):
            assert liveness.is_live(make_record(12345)) is False


class TestLockRecord:
    """Tests for the lock record format."""

    def test_json_uses_camel_case(self) -> None:
        """Keys on disk are camelCase."""
        record = make_record(123)
        data = json.loads(record.to_json())

        assert set(data) == {
            "schemaVersion",
            "fileId",
            "namespace",
            "originalName",
            "mimeType",
            "startedAt",
            "ownerProcessId",
            "ownerHostname",
            "lastHeartbeatAt",
            "releasedAt",
        }
        assert data["startedAt"].endswith("Z")

    def test_naive_datetimes_are_utc(self) -> None:
        """Naive timestamps are read as UTC."""
        record = LockRecord(
            file_id="vid-1",
            namespace=["capsules"],
            original_name="clip.mov",
            started_at=datetime(2024, 1, 1, 12, 0, 0),
            owner_process_id=1,
        )
        assert record.started_at.tzinfo == timezone.utc

    def test_offset_datetimes_are_converted(self) -> None:
        """Timestamps with an offset are normalised to UTC."""
        record = LockRecord.model_validate_json(
            json.dumps(
                {
                    "fileId": "vid-1",
                    "namespace": ["capsules"],
                    "originalName": "clip.mov",
                    "startedAt": "2024-01-01T14:00:00+02:00",
                    "ownerProcessId": 1,
                }
            )
        )
        assert record.started_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_negative_pid_rejected(self) -> None:
        """ownerProcessId cannot be negative."""
        with pytest.raises(ValueError):
            LockRecord(
                file_id="vid-1",
                namespace=["capsules"],
                original_name="clip.mov",
                started_at=utc_now(),
                owner_process_id=-1,
            )

"""Pytest configuration and fixtures."""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from mediaproc.config import Settings
from mediaproc.main import Services, build_services, create_app
from mediaproc.schemas.lock import LockRecord
from mediaproc.services.liveness import ProcessLiveness
from mediaproc.services.temp_store import TempFileStore
from mediaproc.utils.timezone import utc_now

TEST_HOSTNAME = "test-host"
# Far above any real pid_max, so never a running process
DEAD_PID = 2_000_000_000

LockFactory = Callable[..., Path]


@pytest.fixture
def liveness() -> ProcessLiveness:
    """Liveness checker pinned to a fixed hostname."""
    return ProcessLiveness(heartbeat_grace_seconds=120, hostname=TEST_HOSTNAME)


@pytest.fixture
def store(tmp_path: Path, liveness: ProcessLiveness) -> TempFileStore:
    """TempFileStore rooted in a temp directory."""
    return TempFileStore(tmp_path / "ffmpeg-temp", liveness=liveness)


@pytest.fixture
def make_lock(store: TempFileStore) -> LockFactory:
    """Create a job directory with a hand-written lock record.

    Defaults describe a job abandoned by a dead process an hour ago.
    """

    def factory(
        file_id: str,
        namespace: list[str],
        pid: int = DEAD_PID,
        started_at: Optional[datetime] = None,
        heartbeat_at: Optional[datetime] = None,
        hostname: str = TEST_HOSTNAME,
        with_output: bool = False,
    ) -> Path:
        started_at = started_at or utc_now() - timedelta(hours=1)
        temp_dir = store.get_temp_dir(file_id, namespace)
        (temp_dir / "segments").mkdir(parents=True, exist_ok=True)
        (temp_dir / "input.mov").write_bytes(b"source")
        if with_output:
            (temp_dir / "output.mp4").write_bytes(b"finished output")
        store.write_lock(
            temp_dir,
            LockRecord(
                file_id=file_id,
                namespace=namespace,
                original_name="clip.mov",
                mime_type="video/quicktime",
                started_at=started_at,
                owner_process_id=pid,
                owner_hostname=hostname,
                last_heartbeat_at=heartbeat_at or started_at,
            ),
        )
        return temp_dir

    return factory


@pytest.fixture
def live_lock(make_lock: LockFactory) -> LockFactory:
    """Like make_lock, but owned by this process with a fresh heartbeat."""

    def factory(file_id: str, namespace: list[str], **kwargs) -> Path:
        kwargs.setdefault("heartbeat_at", utc_now())
        return make_lock(file_id, namespace, pid=os.getpid(), **kwargs)

    return factory


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment and the host GPU."""
    return Settings(
        _env_file=None,
        temp_base_path=tmp_path / "ffmpeg-temp",
        hwaccel_enabled=False,
    )


@pytest.fixture
def services(settings: Settings) -> Services:
    """Fully wired services for the test settings."""
    return build_services(settings)


@pytest.fixture
async def client(
    settings: Settings, services: Services
) -> AsyncGenerator[AsyncClient, None]:
    """Create test client around a freshly wired app."""
    app = create_app(settings, services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

"""Namespace-isolated temp file store with lock-file based crash recovery.

Directory structure::

    <base>/
    └── {namespace...}/
        └── {fileId}/
            ├── .lock            # LockRecord (JSON)
            ├── input.{ext}      # local copy of the source
            ├── segments/        # segment_NNN.mp4 + concat_list.txt
            └── output.mp4       # canonical processed file

The fileId is used as the directory name so that, after a crash, every
job directory maps straight back to the caller's own record. Whether a
directory is a job at all is decided by its lock file and nothing else.
"""

import logging
import mimetypes
import os
import shutil
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO, NamedTuple, Optional, Union

from pydantic import ValidationError

from mediaproc.exceptions import (
    AlreadyProcessingError,
    MediaProcError,
    NotFoundError,
    format_namespace,
)
from mediaproc.schemas.lock import LOCK_SCHEMA_VERSION, LockRecord
from mediaproc.services.liveness import ProcessLiveness
from mediaproc.utils.timezone import utc_now

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".lock"
LOCK_TEMP_FILE_NAME = ".lock.tmp"
INPUT_STEM = "input"
DEFAULT_INPUT_EXTENSION = "mp4"
OUTPUT_FILE_NAME = "output.mp4"
PARTIAL_OUTPUT_FILE_NAME = "output.part.mp4"
SEGMENTS_DIR_NAME = "segments"
OUTPUT_MIME_TYPE = "video/mp4"

SourceContent = Union[bytes, Path, BinaryIO]


def _validate_segments(segments: list[str]) -> None:
    for segment in segments:
        if not isinstance(segment, str) or not segment:
            raise ValueError("Namespace segments and fileId must be non-empty strings")
        if segment in (".", "..") or "/" in segment or "\\" in segment or "\x00" in segment:
            raise ValueError(f"Invalid path segment: {segment!r}")


def validate_namespace(namespace: list[str]) -> None:
    """Reject namespaces that would resolve outside their own subtree.

    Raises:
        ValueError: If the namespace is empty or a segment is not a single,
            plain path segment
    """
    if not namespace:
        raise ValueError("Namespace must contain at least one segment")
    _validate_segments(namespace)


def validate_job_identity(file_id: str, namespace: list[str]) -> None:
    """Reject identities that would escape their directory.

    Raises:
        ValueError: If fileId or a namespace segment is not a single,
            plain path segment
    """
    validate_namespace(namespace)
    _validate_segments([file_id])


def input_extension(source_name: str) -> str:
    """Lower-cased extension of the source name, defaulting to mp4."""
    suffix = Path(source_name).suffix.lstrip(".").lower()
    if suffix and suffix.isalnum():
        return suffix
    return DEFAULT_INPUT_EXTENSION


@dataclass
class SourceFile:
    """A source video handed to the core by a caller.

    content may be raw bytes, a path to a local file or an open binary file
    object; the store copies it into the job directory either way.
    """

    name: str
    mime_type: str
    content: SourceContent

    @classmethod
    def from_path(cls, path: Path, mime_type: Optional[str] = None) -> "SourceFile":
        """Build a SourceFile for a file already on local disk."""
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            name=path.name,
            mime_type=mime_type or guessed or OUTPUT_MIME_TYPE,
            content=path,
        )


class JobPaths(NamedTuple):
    """Paths owned by a single job."""

    temp_dir: Path
    input_path: Path
    output_path: Path
    segments_dir: Path


@dataclass
class DanglingJob:
    """A job whose lock exists but whose owner is no longer running."""

    file_id: str
    namespace: list[str]
    temp_dir: Path
    input_path: Optional[Path]
    output_path: Optional[Path]
    is_complete: bool
    lock: LockRecord


@dataclass
class ProcessedFile:
    """Open handle on a job's canonical output."""

    stream: BinaryIO
    size: int
    mime_type: str
    path: Path

    def close(self) -> None:
        self.stream.close()

    def __enter__(self) -> "ProcessedFile":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass
class NamespaceStats:
    """Temp usage for one namespace."""

    jobs: int = 0
    size_bytes: int = 0
    dangling: int = 0


@dataclass
class TempStorageStats:
    """Temp usage across all namespaces."""

    total_jobs: int = 0
    total_size_bytes: int = 0
    dangling_count: int = 0
    by_namespace: dict[str, NamespaceStats] = field(default_factory=dict)

    @property
    def total_size_mb(self) -> float:
        """Get total size in MB."""
        return self.total_size_bytes / (1024 ** 2)


class TempFileStore:
    """Owns the on-disk layout of every job and its lock record."""

    def __init__(
        self,
        base_path: Path,
        liveness: Optional[ProcessLiveness] = None,
        max_scan_depth: int = 16,
    ):
        self.base_path = Path(base_path).resolve()
        self.liveness = liveness or ProcessLiveness()
        self.max_scan_depth = max_scan_depth
        # Serializes check-live/purge/create-lock within this process
        self._claim_lock = threading.Lock()

    def ensure_base_dir(self) -> None:
        """Create the base temp directory if it does not exist."""
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"FFmpeg temp directory: {self.base_path}")

    # Paths

    def get_namespace_dir(self, namespace: list[str]) -> Path:
        validate_namespace(namespace)
        return self.base_path.joinpath(*namespace)

    def get_temp_dir(self, file_id: str, namespace: list[str]) -> Path:
        validate_job_identity(file_id, namespace)
        return self.get_namespace_dir(namespace) / file_id

    def get_output_path(self, file_id: str, namespace: list[str]) -> Path:
        return self.get_temp_dir(file_id, namespace) / OUTPUT_FILE_NAME

    def get_segments_dir(self, file_id: str, namespace: list[str]) -> Path:
        return self.get_temp_dir(file_id, namespace) / SEGMENTS_DIR_NAME

    def _job_paths(self, temp_dir: Path, source_name: str) -> JobPaths:
        return JobPaths(
            temp_dir=temp_dir,
            input_path=temp_dir / f"{INPUT_STEM}.{input_extension(source_name)}",
            output_path=temp_dir / OUTPUT_FILE_NAME,
            segments_dir=temp_dir / SEGMENTS_DIR_NAME,
        )

    def _identity_of(self, temp_dir: Path) -> tuple[str, list[str]]:
        """Recover (fileId, namespace) from a job directory path."""
        try:
            parts = temp_dir.relative_to(self.base_path).parts
        except ValueError:
            return temp_dir.name, []
        return parts[-1], list(parts[:-1])

    # Job start

    def claim(
        self,
        file_id: str,
        namespace: list[str],
        source_name: str,
        source_mime_type: Optional[str] = None,
    ) -> JobPaths:
        """Take ownership of a job directory and write its lock record.

        Any stale directory left by a dead owner is purged first. The lock is
        written before the input so that an interrupted copy is still visible
        to recovery as a dangling, incomplete job.

        Raises:
            AlreadyProcessingError: If a live lock exists for the key
        """
        temp_dir = self.get_temp_dir(file_id, namespace)

        with self._claim_lock:
            existing = self.read_lock(temp_dir)
            if existing is not None and self.liveness.is_live(existing):
                raise AlreadyProcessingError(file_id, namespace)

            # Clean up any temp files from previous failed attempts
            self._remove_dir(temp_dir)

            paths = self._job_paths(temp_dir, source_name)
            paths.segments_dir.mkdir(parents=True, exist_ok=True)

            now = utc_now()
            record = LockRecord(
                schema_version=LOCK_SCHEMA_VERSION,
                file_id=file_id,
                namespace=list(namespace),
                original_name=source_name,
                mime_type=source_mime_type or OUTPUT_MIME_TYPE,
                started_at=now,
                owner_process_id=os.getpid(),
                owner_hostname=self.liveness.hostname,
                last_heartbeat_at=now,
            )
            self.write_lock(temp_dir, record)

        logger.debug(f"Claimed {file_id} in {temp_dir}")
        return paths

    def write_input(self, paths: JobPaths, content: SourceContent) -> int:
        """Copy the source into the job directory. Returns bytes written.

        Raises:
            NotFoundError: If the source path does not exist
            MediaProcError: If the copy fails for any other reason
        """
        file_id, namespace = self._identity_of(paths.temp_dir)
        try:
            if isinstance(content, (bytes, bytearray, memoryview)):
                with open(paths.input_path, "wb") as f:
                    f.write(content)
            elif isinstance(content, Path):
                if not content.is_file():
                    raise NotFoundError(file_id, namespace, "input")
                shutil.copyfile(content, paths.input_path)
            else:
                with open(paths.input_path, "wb") as f:
                    shutil.copyfileobj(content, f)
        except OSError as e:
            raise MediaProcError(
                f"Failed to write input for {file_id}: {e}",
                {"file_id": file_id, "namespace": namespace, "path": str(paths.input_path)},
            ) from e

        size = paths.input_path.stat().st_size
        logger.debug(f"Wrote input file: {paths.input_path} ({size} bytes)")
        return size

    def begin(
        self,
        file_id: str,
        namespace: list[str],
        source_name: str,
        source_mime_type: Optional[str],
        source_content: SourceContent,
    ) -> JobPaths:
        """Claim the job directory and materialize the source inside it.

        Returns:
            JobPaths(temp_dir, input_path, output_path, segments_dir)

        Raises:
            AlreadyProcessingError: If a live lock exists for the key
        """
        paths = self.claim(file_id, namespace, source_name, source_mime_type)
        self.write_input(paths, source_content)
        return paths

    # Lock records

    def read_lock(self, temp_dir: Path) -> Optional[LockRecord]:
        """Read a job's lock record.

        Returns:
            The record, or None if it is missing, unreadable or written by a
            newer schema version
        """
        lock_path = Path(temp_dir) / LOCK_FILE_NAME
        try:
            raw = lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read lock file {lock_path}: {e}")
            return None

        try:
            record = LockRecord.model_validate_json(raw)
        except (ValidationError, ValueError) as e:
            logger.warning(f"Ignoring corrupt lock file {lock_path}: {e}")
            return None

        if record.schema_version > LOCK_SCHEMA_VERSION:
            logger.warning(
                f"Ignoring lock file {lock_path} with unsupported schema "
                f"version {record.schema_version}"
            )
            return None
        return record

    def write_lock(self, temp_dir: Path, record: LockRecord) -> None:
        """Atomically replace a job's lock record."""
        tmp_path = Path(temp_dir) / LOCK_TEMP_FILE_NAME
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(record.to_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, Path(temp_dir) / LOCK_FILE_NAME)

    def touch_heartbeat(self, file_id: str, namespace: list[str]) -> bool:
        """Refresh lastHeartbeatAt on a lock owned by this process.

        Returns:
            False if the lock is gone or belongs to someone else
        """
        temp_dir = self.get_temp_dir(file_id, namespace)
        with self._claim_lock:
            record = self.read_lock(temp_dir)
            if record is None or record.owner_process_id != os.getpid():
                logger.warning(f"Heartbeat target missing for {file_id} in {temp_dir}")
                return False
            record.last_heartbeat_at = utc_now()
            self.write_lock(temp_dir, record)
        return True

    def release(self, file_id: str, namespace: list[str]) -> bool:
        """Mark a lock owned by this process as released.

        Called once the job reaches a terminal state. The directory stays in
        place and shows up as dangling straight away.

        Returns:
            False if the lock is gone or belongs to someone else
        """
        temp_dir = self.get_temp_dir(file_id, namespace)
        with self._claim_lock:
            record = self.read_lock(temp_dir)
            if record is None or record.owner_process_id != os.getpid():
                return False
            if record.owner_hostname not in (None, self.liveness.hostname):
                return False
            record.released_at = utc_now()
            self.write_lock(temp_dir, record)
        logger.debug(f"Released lock for {file_id} in {temp_dir}")
        return True

    def is_live(self, file_id: str, namespace: list[str]) -> bool:
        """True iff a lock exists for the key and its owner is still running."""
        record = self.read_lock(self.get_temp_dir(file_id, namespace))
        if record is None:
            return False
        return self.liveness.is_live(record)

    # Recovery

    def list_dangling(self, namespace: list[str]) -> list[DanglingJob]:
        """Find jobs in a namespace whose owner is no longer running.

        Only directories carrying a readable lock record are considered;
        lock-less directories are never treated as jobs.

        Raises:
            ValueError: If the namespace is empty or escapes its subtree
        """
        namespace_dir = self.get_namespace_dir(namespace)
        if not namespace_dir.is_dir():
            logger.debug(f"Namespace directory doesn't exist: {namespace_dir}")
            return []

        dangling: list[DanglingJob] = []
        try:
            entries = sorted(namespace_dir.iterdir())
        except OSError as e:
            logger.error(f"Failed to scan namespace directory {namespace_dir}: {e}")
            return []

        for temp_dir in entries:
            if not temp_dir.is_dir():
                continue
            try:
                job = self._check_dangling(temp_dir)
            except OSError as e:
                logger.debug(f"Error checking {temp_dir}: {e}")
                continue
            if job is not None:
                dangling.append(job)

        return dangling

    def _check_dangling(self, temp_dir: Path) -> Optional[DanglingJob]:
        record = self.read_lock(temp_dir)
        if record is None:
            return None
        if self.liveness.is_live(record):
            return None

        inputs = sorted(temp_dir.glob(f"{INPUT_STEM}.*"))
        output_path = temp_dir / OUTPUT_FILE_NAME
        has_output = output_path.is_file()

        return DanglingJob(
            file_id=record.file_id,
            namespace=list(record.namespace),
            temp_dir=temp_dir,
            input_path=inputs[0] if inputs else None,
            output_path=output_path if has_output else None,
            is_complete=has_output,
            lock=record,
        )

    # Output and cleanup

    def output(self, file_id: str, namespace: list[str]) -> ProcessedFile:
        """Open the canonical output of a job.

        Raises:
            NotFoundError: If no output file exists
        """
        output_path = self.get_output_path(file_id, namespace)
        try:
            size = output_path.stat().st_size
            stream = open(output_path, "rb")
        except FileNotFoundError:
            raise NotFoundError(file_id, namespace, "output") from None

        return ProcessedFile(
            stream=stream,
            size=size,
            mime_type=OUTPUT_MIME_TYPE,
            path=output_path,
        )

    def cleanup(self, file_id: str, namespace: list[str]) -> None:
        """Delete all temp files of a job. Missing directories are ignored."""
        temp_dir = self.get_temp_dir(file_id, namespace)
        self._remove_dir(temp_dir)
        self._cleanup_empty_dirs(temp_dir.parent)
        logger.debug(f"Cleaned up temp directory: {temp_dir}")

    def _remove_dir(self, dir_path: Path) -> None:
        try:
            shutil.rmtree(dir_path)
        except FileNotFoundError:
            pass

    def _cleanup_empty_dirs(self, dir_path: Path) -> None:
        """Remove empty namespace directories up to the base path."""
        try:
            while dir_path != self.base_path and self.base_path in dir_path.parents:
                if not dir_path.exists() or any(dir_path.iterdir()):
                    break
                dir_path.rmdir()
                logger.debug(f"Removed empty directory: {dir_path}")
                dir_path = dir_path.parent
        except OSError:
            pass

    def sweep_older_than(self, max_age: timedelta) -> int:
        """Delete dangling jobs whose lock start time is older than max_age.

        Live jobs are never touched, whatever their age.

        Returns:
            Number of job directories removed
        """
        cutoff = utc_now() - max_age
        removed = 0

        logger.info(f"Cleaning up temp files older than {max_age.total_seconds() / 3600:.1f}h")

        for namespace in self.list_namespaces():
            for job in self.list_dangling(namespace):
                if job.lock.started_at >= cutoff:
                    continue
                # Re-read right before deleting in case a new owner claimed it
                current = self.read_lock(job.temp_dir)
                if current is not None and self.liveness.is_live(current):
                    continue
                logger.info(f"Cleaning up old temp file: {job.file_id} ({job.temp_dir})")
                self._remove_dir(job.temp_dir)
                self._cleanup_empty_dirs(job.temp_dir.parent)
                removed += 1

        logger.info(f"Cleaned up {removed} old temp directories")
        return removed

    # Introspection

    def list_namespaces(self) -> list[list[str]]:
        """Find every namespace that holds at least one job directory.

        Walks the tree with an explicit stack, bounded by max_scan_depth.
        A directory with a lock file is a job; its parent path is a namespace.
        """
        namespaces: list[list[str]] = []
        stack: list[tuple[Path, list[str]]] = [(self.base_path, [])]

        while stack:
            directory, segments = stack.pop()
            try:
                children = [p for p in directory.iterdir() if p.is_dir() and not p.is_symlink()]
            except OSError:
                continue

            has_job = False
            for child in children:
                if (child / LOCK_FILE_NAME).is_file():
                    has_job = True
                elif len(segments) < self.max_scan_depth:
                    stack.append((child, [*segments, child.name]))
                else:
                    logger.warning(f"Namespace scan depth limit reached at {child}")

            if has_job and segments:
                namespaces.append(segments)

        return sorted(namespaces)

    def get_stats(self) -> TempStorageStats:
        """Summarize temp usage for every namespace."""
        stats = TempStorageStats()

        for namespace in self.list_namespaces():
            ns_stats = NamespaceStats()
            for temp_dir in sorted(self.get_namespace_dir(namespace).iterdir()):
                record = self.read_lock(temp_dir) if temp_dir.is_dir() else None
                if record is None:
                    continue
                ns_stats.jobs += 1
                ns_stats.size_bytes += self._dir_size(temp_dir)
                if not self.liveness.is_live(record):
                    ns_stats.dangling += 1

            if ns_stats.jobs:
                stats.by_namespace[format_namespace(namespace)] = ns_stats
                stats.total_jobs += ns_stats.jobs
                stats.total_size_bytes += ns_stats.size_bytes
                stats.dangling_count += ns_stats.dangling

        return stats

    def _dir_size(self, dir_path: Path) -> int:
        total = 0
        for path in dir_path.rglob("*"):
            try:
                if path.is_file():
                    total += path.stat().st_size
            except OSError:
                continue
        return total

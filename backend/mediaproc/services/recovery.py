"""Startup recovery of jobs left behind by a crashed process.

Consumers run this once per namespace they own. Each dangling job is
resolved against the consumer's own file records:

- record gone: discard the temp files
- output complete: persist it through the record store, then discard
- output missing: discard so the consumer can start the job again

If persisting fails the directory is kept for the next attempt.
"""

import logging
from dataclasses import dataclass, field
from typing import Protocol

from mediaproc.services.processing import TranscodeService
from mediaproc.services.temp_store import DanglingJob, ProcessedFile

logger = logging.getLogger(__name__)


class FileRecordStore(Protocol):
    """The slice of a consumer's file storage that recovery needs."""

    async def exists(self, file_id: str) -> bool:
        ...

    async def replace_content(self, file_id: str, processed: ProcessedFile) -> None:
        ...


@dataclass
class RecoveryReport:
    """Counts of what a recovery run did."""

    found: int = 0
    recovered: int = 0
    orphaned: int = 0
    interrupted: int = 0
    failed: list[str] = field(default_factory=list)


class DanglingJobRecovery:
    """Resolves dangling jobs in one namespace."""

    def __init__(
        self,
        service: TranscodeService,
        namespace: list[str],
        records: FileRecordStore,
    ):
        self.service = service
        self.namespace = list(namespace)
        self.records = records

    async def run(self) -> RecoveryReport:
        """Resolve every dangling job in the namespace."""
        report = RecoveryReport()
        dangling = self.service.list_dangling(self.namespace)
        report.found = len(dangling)

        if not dangling:
            return report

        logger.info(
            f"Found {len(dangling)} dangling file(s) in namespace {'/'.join(self.namespace)}"
        )

        for job in dangling:
            try:
                await self._resolve(job, report)
            except Exception:
                logger.exception(f"Failed to recover dangling file {job.file_id}")
                report.failed.append(job.file_id)

        return report

    async def _resolve(self, job: DanglingJob, report: RecoveryReport) -> None:
        if not await self.records.exists(job.file_id):
            logger.warning(
                f"File {job.file_id} not found in records, cleaning up orphaned temp files"
            )
            self.service.cleanup(job.file_id, job.namespace)
            report.orphaned += 1
            return

        if not job.is_complete:
            logger.info(f"Cleaning up interrupted file {job.file_id}")
            self.service.cleanup(job.file_id, job.namespace)
            report.interrupted += 1
            return

        logger.info(f"Recovering completed file {job.file_id}")
        with self.service.fetch_output(job.file_id, job.namespace) as processed:
            await self.records.replace_content(job.file_id, processed)

        self.service.cleanup(job.file_id, job.namespace)
        report.recovered += 1
        logger.info(f"Successfully recovered file {job.file_id}")

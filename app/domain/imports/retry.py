"""
Single-record retry for failed rows of a finished import.

A corrected record is mapped, validated and upserted synchronously. Retry is
only accepted once the job is terminal, which keeps the runner the sole writer
of counters while a job is live.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from app.db.models import RecordRepository
from app.domain.imports.errors import JobNotFinished, RecordNotFound, StorageUnavailable
from app.domain.imports.jobs import FailedRecord, FailureStage, JobStore
from app.domain.imports.progress import ProgressPublisher
from app.domain.imports.schema_mapper import get_schema, map_record
from app.domain.imports.validators import validate_row

logger = logging.getLogger(__name__)


@dataclass
class RetryResult:
    success: bool
    error_reason: Optional[str] = None
    failed_records: List[FailedRecord] = field(default_factory=list)


class RetryService:
    def __init__(self, store: JobStore, repository: RecordRepository, publisher: Optional[ProgressPublisher] = None):
        self._store = store
        self._repository = repository
        self._publisher = publisher
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        return self._locks.setdefault(job_id, asyncio.Lock())

    def forget(self, job_ids: Iterable[str]) -> None:
        """Drop the per-job locks of purged jobs."""
        for job_id in job_ids:
            self._locks.pop(job_id, None)

    async def retry(self, job_id: str, original_index: int, corrected_record: Dict[str, Any]) -> RetryResult:
        """
        Re-run one failed record through validation and the repository.

        Raises:
            JobNotFound: the job was purged or never existed
            JobNotFinished: the job has not reached a terminal phase
            RecordNotFound: no failed record with that index (already retried)
        """
        job = self._store.get(job_id)
        if not job.is_terminal:
            raise JobNotFinished(
                f"Import job '{job_id}' is still {job.phase.value}; retry failed records once it finishes"
            )

        async with self._lock_for(job_id):
            failed = job.find_failed_record(original_index)
            if failed is None:
                raise RecordNotFound(job_id, original_index)

            schema = get_schema(job.schema_type)
            values = map_record(schema, corrected_record)
            outcome = validate_row(schema, values, job.defaults)
            if not outcome.is_valid:
                return self._keep(job, failed, outcome.failure.reason, FailureStage.VALIDATE)

            try:
                upsert = await asyncio.to_thread(self._repository.upsert, job.schema_type, [outcome.record])
            except StorageUnavailable as exc:
                return self._keep(job, failed, f"Storage unavailable, try again later: {exc}", FailureStage.WRITE)

            reason = upsert.failures.get(outcome.record.natural_key())
            if reason is not None:
                return self._keep(job, failed, reason, FailureStage.WRITE)

            job.failed_records.remove(failed)
            job.rows_written += 1
            job.rows_valid += 1
            job.rows_failed -= 1
            if upsert.created_keys:
                job.rows_created += 1
            else:
                job.rows_updated += 1
            job.touch()
            logger.info("Retried row %d of import job %s successfully", original_index, job_id)
            self._notify(job)
            return RetryResult(success=True, failed_records=list(job.failed_records))

    def _keep(self, job, failed: FailedRecord, reason: str, stage: FailureStage) -> RetryResult:
        failed.error_reason = reason
        failed.stage = stage
        job.touch()
        logger.info("Retry of row %d in import job %s failed: %s", failed.original_index, job.job_id, reason)
        return RetryResult(success=False, error_reason=reason, failed_records=list(job.failed_records))

    def _notify(self, job) -> None:
        if self._publisher is not None:
            self._publisher.publish_terminal(job)

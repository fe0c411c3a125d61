"""
Import job execution.

``ImportJobRunner.run`` drives one job from ``queued`` to a terminal phase:
it streams rows out of storage, validates them, buffers valid records and
flushes them through the batch writer. Blocking work (reading and parsing a
chunk of rows, writing a batch) runs in worker threads; the job counters are
only ever touched on the event loop by the runner itself.

``JobLauncher`` starts one supervised task per job, force-fails jobs that stop
making progress, and relays cancellation requests.
"""
import asyncio
import contextlib
import itertools
import logging
import time
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional

from app.core.config import settings
from app.db.models import RecordRepository
from app.domain.imports.errors import FatalImportError
from app.domain.imports.jobs import FailedRecord, FailureStage, ImportJob, JobStore, Phase, utcnow
from app.domain.imports.parser import ParsedFile, ParsedItem, RowError, iter_rows
from app.domain.imports.progress import ProgressPublisher, ThroughputEstimator, estimate_eta
from app.domain.imports.schema_mapper import get_schema
from app.domain.imports.validators import validate_row
from app.domain.imports.writer import BatchWriter, FlushResult, PendingRow
from app.integrations.storage import ObjectStorage, StorageError

logger = logging.getLogger(__name__)


def _take(rows: Iterator[ParsedItem], count: int) -> List[ParsedItem]:
    return list(itertools.islice(rows, count))


class ImportJobRunner:
    def __init__(
        self,
        store: JobStore,
        publisher: ProgressPublisher,
        repository: RecordRepository,
        storage: ObjectStorage,
        *,
        batch_size: Optional[int] = None,
        read_chunk_rows: Optional[int] = None,
        throughput_window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.publisher = publisher
        self.repository = repository
        self.storage = storage
        self.batch_size = batch_size or settings.import_batch_size
        self.read_chunk_rows = read_chunk_rows or settings.import_read_chunk_rows
        self.throughput_window_seconds = throughput_window_seconds or settings.throughput_window_seconds
        self._clock = clock

    def _advance(self, job: ImportJob, phase: Phase) -> None:
        if job.advance_to(phase):
            logger.info("Import job %s -> %s", job.job_id, phase.value)
            self.publisher.publish(job, force=True)

    def finish(self, job: ImportJob, phase: Phase, error_message: Optional[str] = None) -> None:
        if job.is_terminal:
            return
        if error_message:
            job.error_message = error_message
        job.advance_to(phase)
        log = logger.error if phase == Phase.FAILED else logger.info
        log("Import job %s %s: %s", job.job_id, phase.value, job.summary())
        self.publisher.publish_terminal(job)

    def fail(self, job: ImportJob, error_message: str) -> None:
        self.finish(job, Phase.FAILED, error_message)

    def _record_failure(self, job: ImportJob, failure: FailedRecord) -> None:
        job.rows_failed += 1
        job.failed_records.append(failure)
        logger.debug(
            "Job %s row %d failed at %s: %s",
            job.job_id, failure.original_index, failure.stage.value, failure.error_reason,
        )

    def _report(self, job: ImportJob, estimator: ThroughputEstimator) -> None:
        rate = estimator.observe(job.rows_parsed, self._clock())
        job.throughput_rows_per_sec = rate
        job.eta_seconds = estimate_eta(job.rows_total, job.rows_written, rate)
        job.touch(progressed=True)
        self.publisher.publish(job)

    def _parse(self, job: ImportJob, stream: BinaryIO) -> ParsedFile:
        return iter_rows(
            stream,
            schema=get_schema(job.schema_type),
            content_type=job.content_type,
            file_name=job.file_name,
            expected_sha256=job.file_sha256,
            expected_size=job.file_size,
            defaults=job.defaults,
        )

    def _consume(self, job: ImportJob, parsed: ParsedFile, item: ParsedItem, writer: BatchWriter) -> None:
        job.rows_parsed += 1
        if isinstance(item, RowError):
            self._record_failure(job, FailedRecord(
                original_index=item.index,
                raw_record=item.raw,
                error_reason=item.reason,
                stage=FailureStage.PARSE,
                line_number=item.line_number,
            ))
            return

        self._advance(job, Phase.VALIDATING)
        outcome = validate_row(parsed.schema, item.values, parsed.defaults)
        if not outcome.is_valid:
            self._record_failure(job, FailedRecord(
                original_index=item.index,
                raw_record=item.raw,
                error_reason=outcome.failure.reason,
                stage=FailureStage.VALIDATE,
                line_number=item.line_number,
            ))
            return

        job.rows_valid += 1
        writer.add(PendingRow(
            record=outcome.record,
            original_index=item.index,
            raw_record=item.raw,
            line_number=item.line_number,
        ))

    def _apply_flush(self, job: ImportJob, result: FlushResult) -> None:
        job.rows_written += result.stats.written
        job.rows_created += result.stats.created
        job.rows_updated += result.stats.updated
        job.duplicates_removed += result.stats.duplicates_removed
        for failure in result.failures:
            # Passed validation but the database refused it.
            job.rows_valid -= 1
            self._record_failure(job, failure)

    async def _flush(self, job: ImportJob, writer: BatchWriter, estimator: ThroughputEstimator) -> None:
        if writer.pending_count == 0:
            return
        self._advance(job, Phase.WRITING)
        result = await asyncio.to_thread(writer.flush)
        logger.debug(
            "Import job %s flushed %d rows (%d rejected by the database)",
            job.job_id, result.rows_flushed, len(result.failures),
        )
        self._apply_flush(job, result)
        self._report(job, estimator)

    async def run(self, job: ImportJob) -> ImportJob:
        logger.info(
            "Import job %s started: %s file %s (%d bytes)",
            job.job_id, job.schema_type.value, job.file_name, job.file_size,
        )
        parsed: Optional[ParsedFile] = None
        stream: Optional[BinaryIO] = None
        rows: Optional[Iterator[ParsedItem]] = None
        interrupted = False
        try:
            if job.cancel_requested:
                self.finish(job, Phase.CANCELLED)
                return job

            self._advance(job, Phase.PARSING)
            stream = await asyncio.to_thread(self.storage.open_stream, job.file_key)
            parsed = await asyncio.to_thread(self._parse, job, stream)
            job.rows_total = parsed.rows_total_hint
            rows = parsed.rows()

            writer = BatchWriter(self.repository, job.schema_type, self.batch_size)
            estimator = ThroughputEstimator(self.throughput_window_seconds, clock=self._clock)
            estimator.observe(0)

            while not job.cancel_requested:
                chunk = await asyncio.to_thread(_take, rows, self.read_chunk_rows)
                if not chunk:
                    break
                for item in chunk:
                    if job.cancel_requested:
                        break
                    self._consume(job, parsed, item, writer)
                    if writer.is_full:
                        await self._flush(job, writer, estimator)
                self._report(job, estimator)

            if job.cancel_requested:
                dropped = writer.discard_pending()
                if dropped:
                    logger.info("Import job %s cancelled with %d buffered rows unwritten", job.job_id, dropped)
                self.finish(job, Phase.CANCELLED)
                return job

            await self._flush(job, writer, estimator)
            job.rows_total = parsed.rows_total_hint
            self.finish(job, Phase.COMPLETED)
        except (FatalImportError, StorageError) as exc:
            self.fail(job, str(exc))
        except asyncio.CancelledError:
            interrupted = True
            self.fail(job, "Import interrupted before completion")
            raise
        except Exception as exc:
            logger.exception("Unexpected error in import job %s", job.job_id)
            self.fail(job, f"Unexpected error: {exc}")
        finally:
            # After a task cancel a worker thread may still be inside the
            # generator, so only the stream is closed.
            if not interrupted:
                if rows is not None:
                    rows.close()
                if parsed is not None:
                    parsed.close()
            if stream is not None:
                stream.close()
        return job


class JobLauncher:
    """Runs each job as its own supervised asyncio task."""

    def __init__(
        self,
        runner: ImportJobRunner,
        stall_timeout_seconds: Optional[float] = None,
        watchdog_interval_seconds: Optional[float] = None,
    ):
        self.runner = runner
        self.stall_timeout_seconds = stall_timeout_seconds or settings.import_stall_timeout_seconds
        self.watchdog_interval_seconds = watchdog_interval_seconds or min(1.0, self.stall_timeout_seconds / 4)
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def store(self) -> JobStore:
        return self.runner.store

    def launch(self, job: ImportJob) -> asyncio.Task:
        task = asyncio.create_task(self._supervise(job), name=f"import-{job.job_id}")
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.job_id, None))
        return task

    def is_running(self, job_id: str) -> bool:
        return job_id in self._tasks

    async def _stop(self, worker: asyncio.Task) -> None:
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker

    async def _supervise(self, job: ImportJob) -> ImportJob:
        worker = asyncio.create_task(self.runner.run(job))
        try:
            while True:
                done, _ = await asyncio.wait({worker}, timeout=self.watchdog_interval_seconds)
                if done:
                    return worker.result()

                idle = (utcnow() - job.last_progress_at).total_seconds()
                if idle >= self.stall_timeout_seconds:
                    logger.error("Import job %s stalled for %.0f seconds; failing it", job.job_id, idle)
                    self.runner.fail(
                        job, f"Import stalled: no progress for {self.stall_timeout_seconds:g} seconds"
                    )
                    await self._stop(worker)
                    return job

                # Heartbeat keeps time-based emission going while a slow batch runs.
                self.runner.publisher.publish(job)
        except asyncio.CancelledError:
            await self._stop(worker)
            raise

    def cancel(self, job_id: str) -> ImportJob:
        """
        Request cooperative cancellation.

        Idempotent; a no-op for terminal jobs. The runner stops at the next row
        or batch boundary, keeps what was already written and drops the rest.
        """
        job = self.store.get(job_id)
        if job.is_terminal or job.cancel_requested:
            return job
        job.cancel_requested = True
        job.touch()
        logger.info("Cancellation requested for import job %s (phase %s)", job_id, job.phase.value)
        if job_id not in self._tasks:
            # Never launched (or already gone); nothing else will finish it.
            self.runner.finish(job, Phase.CANCELLED)
        return job

    async def wait(self, job_id: str) -> ImportJob:
        """Await a running job; returns the stored job if it already finished."""
        task = self._tasks.get(job_id)
        if task is not None:
            return await asyncio.shield(task)
        return self.store.get(job_id)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

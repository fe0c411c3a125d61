"""
Shared dependencies for the API.

The import runtime (job store, publisher, runner, coordinator, retry service)
is built once per process and handed to routers through FastAPI dependencies,
so tests can swap in a runtime backed by fakes via ``dependency_overrides``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from fastapi import Depends, HTTPException

from app.core.config import settings
from app.db.models import RecordRepository, SqlRecordRepository
from app.db.session import get_engine
from app.domain.imports.errors import (
    IdempotencyMismatch,
    ImportPipelineError,
    InvalidSchemaType,
    JobNotFinished,
    JobNotFound,
    PayloadTooLarge,
    RecordNotFound,
    UnsupportedContentType,
    UploadNotFound,
)
from app.domain.imports.jobs import JobStore
from app.domain.imports.orchestrator import ImportJobRunner, JobLauncher
from app.domain.imports.progress import ProgressPublisher
from app.domain.imports.retry import RetryService
from app.domain.uploads.coordinator import UploadCoordinator
from app.integrations.storage import ObjectStorage, S3ObjectStorage, StorageError

logger = logging.getLogger(__name__)


@dataclass
class ImportRuntime:
    store: JobStore
    publisher: ProgressPublisher
    storage: ObjectStorage
    repository: RecordRepository
    launcher: JobLauncher
    coordinator: UploadCoordinator
    retry_service: RetryService

    def purge_expired(self, now: Optional[datetime] = None) -> Tuple[List[str], List[str]]:
        """Drop finished jobs and stale upload sessions past their retention window."""
        purged_jobs = self.store.purge_expired(now)
        self.retry_service.forget(purged_jobs)
        purged_uploads = self.coordinator.purge_expired(now)
        return purged_jobs, purged_uploads


def build_runtime(
    storage: Optional[ObjectStorage] = None,
    repository: Optional[RecordRepository] = None,
    **runner_options,
) -> ImportRuntime:
    """Wire the import pipeline; production defaults are S3 storage and the SQL repository."""
    storage = storage or S3ObjectStorage()
    repository = repository or SqlRecordRepository(get_engine())
    store = JobStore(retention_seconds=settings.import_job_retention_seconds)
    publisher = ProgressPublisher(
        store,
        emit_every_rows=settings.progress_emit_every_rows,
        emit_interval_seconds=settings.progress_emit_interval_seconds,
    )
    stall_timeout = runner_options.pop("stall_timeout_seconds", None)
    runner = ImportJobRunner(store, publisher, repository, storage, **runner_options)
    launcher = JobLauncher(runner, stall_timeout_seconds=stall_timeout)
    return ImportRuntime(
        store=store,
        publisher=publisher,
        storage=storage,
        repository=repository,
        launcher=launcher,
        coordinator=UploadCoordinator(storage, store, launcher),
        retry_service=RetryService(store, repository, publisher),
    )


_runtime: Optional[ImportRuntime] = None


def set_runtime(runtime: Optional[ImportRuntime]) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> ImportRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def get_coordinator(runtime: ImportRuntime = Depends(get_runtime)) -> UploadCoordinator:
    return runtime.coordinator


def get_job_store(runtime: ImportRuntime = Depends(get_runtime)) -> JobStore:
    return runtime.store


def get_publisher(runtime: ImportRuntime = Depends(get_runtime)) -> ProgressPublisher:
    return runtime.publisher


def get_launcher(runtime: ImportRuntime = Depends(get_runtime)) -> JobLauncher:
    return runtime.launcher


def get_retry_service(runtime: ImportRuntime = Depends(get_runtime)) -> RetryService:
    return runtime.retry_service


_STATUS_CODES = {
    InvalidSchemaType: 400,
    UnsupportedContentType: 400,
    UploadNotFound: 404,
    JobNotFound: 404,
    RecordNotFound: 404,
    IdempotencyMismatch: 409,
    JobNotFinished: 409,
    PayloadTooLarge: 413,
}


def to_http_exception(error: Exception) -> HTTPException:
    """
    Translate a pipeline or storage error into an HTTPException.

    A 404 for a job means "finished and cleaned up" to polling clients.
    """
    if isinstance(error, StorageError):
        logger.error("Storage error while handling request: %s", error)
        return HTTPException(status_code=503, detail=f"Storage unavailable: {error}")
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    if isinstance(error, ImportPipelineError):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=500, detail=f"Unexpected error: {error}")

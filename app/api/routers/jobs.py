"""
Endpoints for tracking, cancelling and repairing import jobs.

A 404 on any job endpoint means the job finished and was cleaned up after the
retention window (or never existed); polling clients should stop.
"""
import csv
import json
import logging
from io import StringIO
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from app.api.dependencies import (
    get_job_store,
    get_launcher,
    get_publisher,
    get_retry_service,
    to_http_exception,
)
from app.api.schemas.shared import (
    FailedRecordInfo,
    FailedRecordsResponse,
    ImportJobListResponse,
    ImportJobResponse,
    ImportProgress,
    RetryRecordRequest,
    RetryRecordResponse,
)
from app.domain.imports.errors import ImportPipelineError
from app.domain.imports.jobs import FailedRecord, JobStore
from app.domain.imports.orchestrator import JobLauncher
from app.domain.imports.progress import ProgressPublisher, Subscription
from app.domain.imports.retry import RetryService
from app.domain.imports.schema_mapper import get_schema

router = APIRouter(tags=["import-jobs"])
logger = logging.getLogger(__name__)


def _failed_record_infos(records: List[FailedRecord]) -> List[FailedRecordInfo]:
    return [FailedRecordInfo(**record.to_dict()) for record in records]


@router.get("/import-jobs", response_model=ImportJobListResponse)
async def list_import_jobs_endpoint(
    schema_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    store: JobStore = Depends(get_job_store),
):
    try:
        schema = get_schema(schema_type).schema_type if schema_type else None
    except ImportPipelineError as e:
        raise to_http_exception(e)
    jobs = store.list(schema_type=schema, limit=limit, offset=offset)
    return ImportJobListResponse(
        success=True,
        jobs=[ImportProgress(**job.snapshot()) for job in jobs],
        limit=limit,
        offset=offset,
    )


@router.get("/import-jobs/{job_id}", response_model=ImportJobResponse)
async def get_import_job_endpoint(job_id: str, publisher: ProgressPublisher = Depends(get_publisher)):
    try:
        snapshot = publisher.snapshot(job_id)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return ImportJobResponse(success=True, job=ImportProgress(**snapshot))


def format_sse(snapshot: Dict[str, Any]) -> str:
    event = "complete" if snapshot.get("status") else "progress"
    return f"event: {event}\ndata: {json.dumps(snapshot, default=str)}\n\n"


async def _event_stream(subscription: Subscription, request: Request):
    try:
        async for snapshot in subscription:
            yield format_sse(snapshot)
            if await request.is_disconnected():
                logger.debug("Progress subscriber for %s disconnected", subscription.job_id)
                break
    finally:
        subscription.close()


@router.get("/import-jobs/{job_id}/events")
async def stream_import_job_events(
    job_id: str,
    request: Request,
    publisher: ProgressPublisher = Depends(get_publisher),
):
    """
    Server-Sent Events stream of progress snapshots.

    Emits ``progress`` events at a bounded rate and exactly one ``complete``
    event when the job reaches a terminal phase, then closes. Reconnecting
    clients simply subscribe again.
    """
    try:
        subscription = publisher.subscribe(job_id)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    logger.debug("Import job %s now has %d progress subscribers", job_id, publisher.subscriber_count(job_id))
    return StreamingResponse(
        _event_stream(subscription, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/import-jobs/{job_id}/cancel", response_model=ImportJobResponse)
async def cancel_import_job_endpoint(job_id: str, launcher: JobLauncher = Depends(get_launcher)):
    """Request cancellation. Safe to repeat; terminal jobs are returned unchanged."""
    try:
        job = launcher.cancel(job_id)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return ImportJobResponse(success=True, job=ImportProgress(**job.snapshot()))


@router.get("/import-jobs/{job_id}/failed-records", response_model=FailedRecordsResponse)
async def list_failed_records_endpoint(job_id: str, store: JobStore = Depends(get_job_store)):
    try:
        job = store.get(job_id)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return FailedRecordsResponse(
        success=True,
        job_id=job.job_id,
        rows_failed=job.rows_failed,
        failed_records=_failed_record_infos(job.failed_records),
    )


def generate_error_csv_stream(records: List[FailedRecord]):
    """
    Stream failed records as CSV for manual correction.

    Columns are the row number, the failure stage and reason, followed by every
    raw column seen across the failed rows in first-seen order.
    """
    raw_columns: List[str] = []
    for record in records:
        for column in record.raw_record:
            if column not in raw_columns:
                raw_columns.append(column)

    buffer = StringIO()
    writer = csv.writer(buffer)

    writer.writerow(["row_number", "stage", "error_reason", *raw_columns])
    yield buffer.getvalue()
    buffer.seek(0)
    buffer.truncate(0)

    for record in records:
        writer.writerow([
            record.original_index,
            record.stage.value,
            record.error_reason,
            *[record.raw_record.get(column, "") for column in raw_columns],
        ])
        yield buffer.getvalue()
        buffer.seek(0)
        buffer.truncate(0)


@router.get("/import-jobs/{job_id}/failed-records.csv")
async def export_failed_records_endpoint(job_id: str, store: JobStore = Depends(get_job_store)):
    try:
        job = store.get(job_id)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    filename = f"{job.job_id}-errors.csv"
    return StreamingResponse(
        generate_error_csv_stream(list(job.failed_records)),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Row-Count": str(len(job.failed_records)),
        },
    )


@router.post("/import-jobs/{job_id}/retry", response_model=RetryRecordResponse)
async def retry_failed_record_endpoint(
    job_id: str,
    request: RetryRecordRequest,
    retry_service: RetryService = Depends(get_retry_service),
    store: JobStore = Depends(get_job_store),
):
    """
    Re-submit one corrected failed record.

    A failed retry is a normal response (``success: false`` with the reason);
    only a missing job or record, or a job still running, is an HTTP error.
    """
    try:
        result = await retry_service.retry(job_id, request.original_index, request.corrected_record)
        job = store.get(job_id)
    except ImportPipelineError as e:
        raise to_http_exception(e)
    return RetryRecordResponse(
        success=result.success,
        error_reason=result.error_reason,
        failed_records=_failed_record_infos(result.failed_records),
        job=ImportProgress(**job.snapshot()),
    )

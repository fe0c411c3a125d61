from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.domain.imports.schema_mapper import SchemaType


class InitiateUploadRequest(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    content_type: str = Field(..., min_length=1)
    schema_type: str  # Validated by the coordinator so unknown types map to 400

    @field_validator("file_name")
    def validate_file_name(cls, value: str) -> str:
        """Reject names that are only whitespace."""
        normalized = value.strip()
        if not normalized:
            raise ValueError("file_name cannot be blank")
        return normalized


class UploadTarget(BaseModel):
    """Where and how the client sends the file bytes."""
    url: str
    method: str = "PUT"
    headers: Dict[str, str] = Field(default_factory=dict)
    expires_in: int


class InitiateUploadResponse(BaseModel):
    success: bool
    upload_id: str
    upload_target: UploadTarget
    file_key: str
    idempotency_key: str
    expires_at: datetime


class CompleteUploadRequest(BaseModel):
    upload_id: str
    file_key: str
    file_size: int = Field(..., ge=0)
    file_sha256: str = Field(..., pattern=r"^[A-Fa-f0-9]{64}$")
    idempotency_key: str
    # Job-level field values applied to rows that leave them empty (e.g. to_number)
    defaults: Optional[Dict[str, Any]] = None


class CompleteUploadResponse(BaseModel):
    success: bool
    job_id: str
    status: str
    replayed: bool = False


class ImportProgress(BaseModel):
    """Progress snapshot; identical for the pull endpoint and the event stream."""
    job_id: str
    schema_type: SchemaType
    file_name: str
    phase: str
    rows_total: Optional[int] = None
    rows_parsed: int = 0
    rows_valid: int = 0
    rows_written: int = 0
    rows_failed: int = 0
    rows_created: int = 0
    rows_updated: int = 0
    duplicates_removed: int = 0
    throughput_rps: Optional[float] = None
    eta_seconds: Optional[float] = None
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None
    status: Optional[str] = None  # Terminal only
    summary: Optional[str] = None
    error_message: Optional[str] = None


class ImportJobResponse(BaseModel):
    success: bool
    job: ImportProgress


class ImportJobListResponse(BaseModel):
    success: bool
    jobs: List[ImportProgress]
    limit: int
    offset: int


class FailedRecordInfo(BaseModel):
    original_index: int
    raw_record: Dict[str, Any]
    error_reason: str
    stage: str
    line_number: Optional[int] = None


class FailedRecordsResponse(BaseModel):
    success: bool
    job_id: str
    rows_failed: int
    failed_records: List[FailedRecordInfo]


class RetryRecordRequest(BaseModel):
    original_index: int = Field(..., ge=1)
    corrected_record: Dict[str, Any]


class RetryRecordResponse(BaseModel):
    success: bool
    error_reason: Optional[str] = None
    failed_records: List[FailedRecordInfo]
    job: ImportProgress

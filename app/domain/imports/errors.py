"""
Exception hierarchy for the bulk import pipeline.

Errors fall in two families: caller errors raised synchronously by the upload
coordinator, job store and retry service, and fatal run errors that move a job
to ``failed``. Row-level problems are never raised; they become failed records.
"""
from typing import Optional


class ImportPipelineError(Exception):
    """Base exception for import pipeline operations."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidSchemaType(ImportPipelineError):
    """Raised when an import targets a schema type that is not registered."""

    def __init__(self, schema_type: str):
        self.schema_type = schema_type
        super().__init__(f"Unknown schema type '{schema_type}'")


class UnsupportedContentType(ImportPipelineError):
    """Raised when a file is neither CSV, XLS nor XLSX."""


class UploadNotFound(ImportPipelineError):
    """Raised when an upload id is unknown, expired, or its object is missing."""


class IdempotencyMismatch(ImportPipelineError):
    """Raised when a completion does not match what was issued at initiate."""


class PayloadTooLarge(ImportPipelineError):
    """Raised when a declared file size exceeds the schema type's limit."""

    def __init__(self, file_size: int, limit_bytes: int, schema_type: str):
        self.file_size = file_size
        self.limit_bytes = limit_bytes
        self.schema_type = schema_type
        limit_mb = limit_bytes // (1024 * 1024)
        super().__init__(
            f"File is too large for '{schema_type}' imports: {file_size} bytes "
            f"(maximum allowed is {limit_mb}MB)"
        )


class JobNotFound(ImportPipelineError):
    """Raised for unknown or garbage-collected jobs. Callers treat it as finished."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job '{job_id}' not found (finished and cleaned up, or never existed)")


class RecordNotFound(ImportPipelineError):
    """Raised when a retry targets a failed record index that no longer exists."""

    def __init__(self, job_id: str, original_index: int):
        self.job_id = job_id
        self.original_index = original_index
        super().__init__(f"No failed record with index {original_index} in job '{job_id}'")


class JobNotFinished(ImportPipelineError):
    """Raised when a retry is attempted while the job is still running."""


class InvalidPhaseTransition(ImportPipelineError):
    """Raised when a job would move backwards or leave a terminal phase."""


class FatalImportError(ImportPipelineError):
    """Base class for errors that fail the whole job."""


class FileParseError(FatalImportError):
    """File-level parse failure: wrong content type, corrupt container, no rows."""


class ChecksumMismatch(FatalImportError):
    """The streamed bytes do not match the hash or size declared at completion."""

    def __init__(self, expected: str, actual: str, expected_size: Optional[int] = None, actual_size: Optional[int] = None):
        self.expected = expected
        self.actual = actual
        detail = f"expected sha256 {expected}, got {actual}"
        if expected_size is not None and actual_size is not None and expected_size != actual_size:
            detail += f"; expected {expected_size} bytes, read {actual_size}"
        super().__init__(f"Uploaded file does not match its declared checksum: {detail}")


class StorageUnavailable(FatalImportError):
    """The persistence layer cannot be reached; the job fails with what was committed."""

"""
In-memory tracking for import jobs.

``JobStore`` is the single owner of job state. A job is created when an upload
is completed, mutated only by the runner driving it (and by the retry service
once it is terminal), and purged after the retention window. Lookups of a
purged or unknown id raise ``JobNotFound``.
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from app.domain.imports.errors import InvalidPhaseTransition, JobNotFound
from app.domain.imports.schema_mapper import SchemaType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    QUEUED = "queued"
    PARSING = "parsing"
    VALIDATING = "validating"
    WRITING = "writing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED, Phase.CANCELLED})

_PHASE_RANK = {
    Phase.QUEUED: 0,
    Phase.PARSING: 1,
    Phase.VALIDATING: 2,
    Phase.WRITING: 3,
    Phase.COMPLETED: 4,
    Phase.FAILED: 4,
    Phase.CANCELLED: 4,
}


class FailureStage(str, Enum):
    PARSE = "parse"
    VALIDATE = "validate"
    WRITE = "write"


@dataclass
class FailedRecord:
    original_index: int
    raw_record: Dict[str, Any]
    error_reason: str
    stage: FailureStage = FailureStage.VALIDATE
    line_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_index": self.original_index,
            "raw_record": dict(self.raw_record),
            "error_reason": self.error_reason,
            "stage": self.stage.value,
            "line_number": self.line_number,
        }


@dataclass
class ImportJob:
    job_id: str
    upload_id: str
    file_key: str
    file_name: str
    content_type: str
    file_size: int
    file_sha256: str
    idempotency_key: str
    schema_type: SchemaType
    defaults: Dict[str, Any] = field(default_factory=dict)

    phase: Phase = Phase.QUEUED
    rows_total: Optional[int] = None
    rows_parsed: int = 0
    rows_valid: int = 0
    rows_written: int = 0
    rows_failed: int = 0
    rows_created: int = 0
    rows_updated: int = 0
    duplicates_removed: int = 0
    throughput_rows_per_sec: Optional[float] = None
    eta_seconds: Optional[float] = None
    failed_records: List[FailedRecord] = field(default_factory=list)
    error_message: Optional[str] = None
    cancel_requested: bool = False

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    last_progress_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def advance_to(self, phase: Phase) -> bool:
        """
        Move the phase label forward.

        Returns False (and changes nothing) when ``phase`` is not ahead of the
        current one. Leaving a terminal phase raises ``InvalidPhaseTransition``.
        """
        if self.is_terminal:
            if phase == self.phase:
                return False
            raise InvalidPhaseTransition(
                f"Job {self.job_id} is {self.phase.value}; cannot move to {phase.value}"
            )
        if _PHASE_RANK[phase] <= _PHASE_RANK[self.phase]:
            return False
        self.phase = phase
        self.touch()
        if phase.is_terminal:
            self.finished_at = self.updated_at
            self.eta_seconds = None
        return True

    def touch(self, progressed: bool = False) -> None:
        self.updated_at = utcnow()
        if progressed:
            self.last_progress_at = self.updated_at

    def find_failed_record(self, original_index: int) -> Optional[FailedRecord]:
        for record in self.failed_records:
            if record.original_index == original_index:
                return record
        return None

    def summary(self) -> str:
        parts = [
            f"{self.rows_parsed} parsed",
            f"{self.rows_valid} valid",
            f"{self.rows_written} written",
            f"{self.rows_failed} failed",
        ]
        if self.duplicates_removed:
            parts.append(f"{self.duplicates_removed} duplicates removed")
        text = ", ".join(parts)
        if self.error_message:
            text = f"{text}. {self.error_message}"
        return text

    def snapshot(self) -> Dict[str, Any]:
        """Progress payload shared by the pull endpoint and the event stream."""
        payload: Dict[str, Any] = {
            "job_id": self.job_id,
            "schema_type": self.schema_type.value,
            "file_name": self.file_name,
            "phase": self.phase.value,
            "rows_total": self.rows_total,
            "rows_parsed": self.rows_parsed,
            "rows_valid": self.rows_valid,
            "rows_written": self.rows_written,
            "rows_failed": self.rows_failed,
            "rows_created": self.rows_created,
            "rows_updated": self.rows_updated,
            "duplicates_removed": self.duplicates_removed,
            "throughput_rps": (
                round(self.throughput_rows_per_sec, 2) if self.throughput_rows_per_sec is not None else None
            ),
            "eta_seconds": round(self.eta_seconds, 1) if self.eta_seconds is not None else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
        if self.is_terminal:
            payload["status"] = self.phase.value
            payload["summary"] = self.summary()
            payload["error_message"] = self.error_message
        return payload


class JobStore:
    """Owned, thread-safe registry of import jobs with a retention window."""

    def __init__(self, retention_seconds: int):
        self._retention = timedelta(seconds=retention_seconds)
        self._jobs: Dict[str, ImportJob] = {}
        self._lock = threading.Lock()

    def create(self, **fields: Any) -> ImportJob:
        job = ImportJob(job_id=f"job_{uuid.uuid4().hex}", **fields)
        with self._lock:
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> ImportJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list(self, schema_type: Optional[SchemaType] = None, limit: int = 50, offset: int = 0) -> List[ImportJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        if schema_type is not None:
            jobs = [job for job in jobs if job.schema_type == schema_type]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[offset:offset + limit]

    def find_by_idempotency_key(self, idempotency_key: str) -> List[ImportJob]:
        """Jobs created for a key, newest first."""
        with self._lock:
            matches = [job for job in self._jobs.values() if job.idempotency_key == idempotency_key]
        matches.sort(key=lambda job: job.created_at, reverse=True)
        return matches

    def purge_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Drop terminal jobs whose retention window has elapsed."""
        cutoff = (now or utcnow()) - self._retention
        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.is_terminal and job.finished_at is not None and job.finished_at <= cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
        return expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

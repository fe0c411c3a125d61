"""
Upload coordination: initiate a direct-to-storage upload, then complete it
into an import job.

The idempotency key is issued here and bound to the upload id, so a client
can safely repeat ``complete`` (network retry, double click) without starting
a second import of the same bytes.
"""
import asyncio
import hmac
import logging
import re
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from app.core.config import settings
from app.domain.imports.errors import IdempotencyMismatch, PayloadTooLarge, UploadNotFound
from app.domain.imports.jobs import ImportJob, JobStore, Phase, utcnow
from app.domain.imports.orchestrator import JobLauncher
from app.domain.imports.parser import detect_file_format
from app.domain.imports.schema_mapper import SchemaType, get_schema, max_file_size_bytes
from app.integrations.storage import ObjectStorage

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r'[^A-Za-z0-9._-]+')


def safe_file_name(file_name: str) -> str:
    name = file_name.replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_KEY_CHARS.sub("_", name).strip("._")
    return name or "upload"


@dataclass
class UploadSession:
    upload_id: str
    file_name: str
    content_type: str
    schema_type: SchemaType
    file_key: str
    idempotency_key: str
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None


@dataclass
class UploadTicket:
    upload_id: str
    upload_target: Dict[str, Any]
    file_key: str
    idempotency_key: str
    expires_at: datetime


@dataclass
class CompletionResult:
    job_id: str
    status: str
    replayed: bool = False


class UploadCoordinator:
    def __init__(
        self,
        storage: ObjectStorage,
        store: JobStore,
        launcher: JobLauncher,
        upload_ttl_seconds: Optional[int] = None,
        completed_retention_seconds: Optional[int] = None,
    ):
        self._storage = storage
        self._store = store
        self._launcher = launcher
        self._ttl = timedelta(seconds=upload_ttl_seconds or settings.upload_url_ttl_seconds)
        self._completed_retention = timedelta(
            seconds=completed_retention_seconds or settings.import_job_retention_seconds
        )
        self._sessions: Dict[str, UploadSession] = {}
        self._sessions_lock = threading.Lock()
        self._complete_locks: Dict[str, asyncio.Lock] = {}

    def initiate(self, file_name: str, content_type: str, schema_type: Any) -> UploadTicket:
        """
        Reserve an object key and hand back a presigned upload target.

        Raises:
            InvalidSchemaType: unknown schema type
            UnsupportedContentType: neither CSV, XLS nor XLSX
        """
        schema = get_schema(schema_type)
        detect_file_format(content_type, file_name)

        upload_id = f"imp_{secrets.token_hex(12)}"
        now = utcnow()
        file_key = "/".join([
            settings.storage_import_prefix,
            schema.schema_type.value,
            now.strftime("%Y-%m-%d"),
            upload_id,
            safe_file_name(file_name),
        ])
        session = UploadSession(
            upload_id=upload_id,
            file_name=file_name,
            content_type=content_type,
            schema_type=schema.schema_type,
            file_key=file_key,
            idempotency_key=secrets.token_urlsafe(32),
            created_at=now,
            expires_at=now + self._ttl,
        )
        target = self._storage.create_upload_target(file_key, content_type, int(self._ttl.total_seconds()))

        with self._sessions_lock:
            self._sessions[upload_id] = session
        logger.info("Initiated %s upload %s -> %s", schema.schema_type.value, upload_id, file_key)
        return UploadTicket(
            upload_id=upload_id,
            upload_target=target,
            file_key=file_key,
            idempotency_key=session.idempotency_key,
            expires_at=session.expires_at,
        )

    def _get_session(self, upload_id: str) -> UploadSession:
        with self._sessions_lock:
            session = self._sessions.get(upload_id)
        if session is None or (session.expires_at is not None and session.expires_at <= utcnow()):
            raise UploadNotFound(f"Upload '{upload_id}' not found or expired; initiate a new upload")
        return session

    def _replay_target(self, session: UploadSession, file_sha256: str) -> Optional[ImportJob]:
        """Prior job that a repeated completion should resolve to, if any."""
        for job in self._store.find_by_idempotency_key(session.idempotency_key):
            if job.phase in (Phase.FAILED, Phase.CANCELLED):
                continue
            if job.file_sha256 != file_sha256:
                raise IdempotencyMismatch(
                    f"Upload '{session.upload_id}' was already completed with a different file checksum"
                )
            return job
        return None

    async def complete(
        self,
        upload_id: str,
        file_key: str,
        file_size: int,
        file_sha256: str,
        idempotency_key: str,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> CompletionResult:
        """
        Turn a finished upload into a queued import job.

        Raises:
            UploadNotFound: unknown/expired upload, or the object is not in storage
            IdempotencyMismatch: key or file key differs from what initiate issued
            PayloadTooLarge: declared size exceeds the schema type's limit
        """
        session = self._get_session(upload_id)
        if not hmac.compare_digest(idempotency_key.encode(), session.idempotency_key.encode()):
            raise IdempotencyMismatch(f"Idempotency key does not match upload '{upload_id}'")
        if file_key != session.file_key:
            raise IdempotencyMismatch(f"File key does not match upload '{upload_id}'")

        limit = max_file_size_bytes(session.schema_type)
        if file_size > limit:
            logger.info("Rejected upload %s: %d bytes over %d byte limit", upload_id, file_size, limit)
            raise PayloadTooLarge(file_size, limit, session.schema_type.value)

        file_sha256 = file_sha256.lower()
        lock = self._complete_locks.setdefault(upload_id, asyncio.Lock())
        async with lock:
            prior = self._replay_target(session, file_sha256)
            if prior is not None:
                logger.info("Replayed completion of upload %s -> job %s", upload_id, prior.job_id)
                return CompletionResult(job_id=prior.job_id, status=prior.phase.value, replayed=True)

            exists = await asyncio.to_thread(self._storage.object_exists, session.file_key)
            if not exists:
                raise UploadNotFound(f"No uploaded object found at '{session.file_key}'; upload the file first")

            job = self._store.create(
                upload_id=upload_id,
                file_key=session.file_key,
                file_name=session.file_name,
                content_type=session.content_type,
                file_size=file_size,
                file_sha256=file_sha256,
                idempotency_key=session.idempotency_key,
                schema_type=session.schema_type,
                defaults=dict(defaults or {}),
            )
            # Keep the session around as long as the job so replays still resolve.
            session.expires_at = utcnow() + self._completed_retention
            self._launcher.launch(job)
            logger.info("Upload %s completed; queued import job %s", upload_id, job.job_id)
            return CompletionResult(job_id=job.job_id, status=job.phase.value)

    def purge_expired(self, now: Optional[datetime] = None) -> List[str]:
        now = now or utcnow()
        with self._sessions_lock:
            expired = [
                upload_id for upload_id, session in self._sessions.items()
                if session.expires_at is not None and session.expires_at <= now
            ]
            for upload_id in expired:
                del self._sessions[upload_id]
                self._complete_locks.pop(upload_id, None)
        return expired

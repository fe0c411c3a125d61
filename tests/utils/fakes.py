"""
Test doubles for the import pipeline: object storage held in memory,
repositories that block or fail on demand, and helpers to build source files.
"""
import csv
import hashlib
import io
import threading
from typing import Any, Dict, List, Optional, Sequence

from openpyxl import Workbook

from app.db.models import RecordRepository, UpsertResult
from app.domain.imports.errors import StorageUnavailable
from app.domain.imports.jobs import ImportJob, JobStore
from app.domain.imports.schema_mapper import SchemaType


def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def csv_bytes(rows: Sequence[Sequence[Any]], delimiter: str = ",", bom: bool = False) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n")
    for row in rows:
        writer.writerow(row)
    data = buffer.getvalue().encode("utf-8")
    return (b"\xef\xbb\xbf" + data) if bom else data


def xlsx_bytes(rows: Sequence[Sequence[Any]], sheet_title: str = "Sheet1") -> bytes:
    workbook = Workbook()
    worksheet = workbook.active
    worksheet.title = sheet_title
    for row in rows:
        worksheet.append(list(row))
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class BlockingStream(io.RawIOBase):
    """Stream whose reads hang until ``release`` is set."""

    def __init__(self, content: bytes, release: threading.Event):
        self._inner = io.BytesIO(content)
        self._release = release

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        self._release.wait(timeout=10)
        return self._inner.read(size)


class InMemoryObjectStorage:
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.blocking: Dict[str, threading.Event] = {}
        self.opened: List[str] = []
        self.streams: List[Any] = []

    def put(self, file_key: str, content: bytes) -> str:
        self.objects[file_key] = content
        return sha256_hex(content)

    def create_upload_target(self, file_key: str, content_type: str, expires_in: int) -> Dict[str, Any]:
        return {
            "url": f"https://storage.test/bucket/{file_key}?X-Amz-Expires={expires_in}",
            "method": "PUT",
            "headers": {"Content-Type": content_type},
            "expires_in": expires_in,
        }

    def object_exists(self, file_key: str) -> bool:
        return file_key in self.objects

    def open_stream(self, file_key: str):
        self.opened.append(file_key)
        content = self.objects[file_key]
        if file_key in self.blocking:
            stream = BlockingStream(content, self.blocking[file_key])
        else:
            stream = io.BytesIO(content)
        self.streams.append(stream)
        return stream


class GatedRepository:
    """Wraps a repository; the ``gate_at``-th upsert waits until released."""

    def __init__(self, inner: RecordRepository, gate_at: int):
        self.inner = inner
        self.gate_at = gate_at
        self.calls = 0
        self.reached = threading.Event()
        self.release = threading.Event()

    def upsert(self, schema_type: SchemaType, records) -> UpsertResult:
        self.calls += 1
        if self.calls == self.gate_at:
            self.reached.set()
            self.release.wait(timeout=10)
        return self.inner.upsert(schema_type, records)

    def fetch(self, schema_type, key):
        return self.inner.fetch(schema_type, key)

    def count(self, schema_type) -> int:
        return self.inner.count(schema_type)


class FlakyRepository:
    """Wraps a repository; upserts from ``fail_from`` onwards raise StorageUnavailable."""

    def __init__(self, inner: RecordRepository, fail_from: int):
        self.inner = inner
        self.fail_from = fail_from
        self.calls = 0

    def upsert(self, schema_type: SchemaType, records) -> UpsertResult:
        self.calls += 1
        if self.calls >= self.fail_from:
            raise StorageUnavailable("Database unavailable: connection refused")
        return self.inner.upsert(schema_type, records)

    def fetch(self, schema_type, key):
        return self.inner.fetch(schema_type, key)

    def count(self, schema_type) -> int:
        return self.inner.count(schema_type)


def stage_job(
    store: JobStore,
    storage: InMemoryObjectStorage,
    content: bytes,
    schema_type: SchemaType = SchemaType.PRICELIST,
    file_name: str = "upload.csv",
    content_type: str = "text/csv",
    defaults: Optional[Dict[str, Any]] = None,
    file_sha256: Optional[str] = None,
    file_size: Optional[int] = None,
) -> ImportJob:
    """Store ``content`` and create a queued job for it, bypassing the coordinator."""
    file_key = f"imports/{schema_type.value}/test/{file_name}"
    actual_sha = storage.put(file_key, content)
    return store.create(
        upload_id="imp_test",
        file_key=file_key,
        file_name=file_name,
        content_type=content_type,
        file_size=len(content) if file_size is None else file_size,
        file_sha256=file_sha256 or actual_sha,
        idempotency_key=f"key-{file_name}",
        schema_type=schema_type,
        defaults=dict(defaults or {}),
    )

"""
Tests for upload initiation and idempotent completion.
"""
import asyncio
from datetime import timedelta

import pytest

from app.domain.imports.errors import (
    IdempotencyMismatch,
    InvalidSchemaType,
    PayloadTooLarge,
    UnsupportedContentType,
    UploadNotFound,
)
from app.domain.imports.jobs import Phase, utcnow
from app.domain.uploads.coordinator import safe_file_name
from tests.utils.fakes import csv_bytes, sha256_hex

CONTENT = csv_bytes([["item_code", "price"], ["A1", "100"], ["B1", "200"]])


def _initiate(runtime, file_name="prices.csv", schema_type="pricelist"):
    return runtime.coordinator.initiate(file_name, "text/csv", schema_type)


async def _complete(runtime, ticket, content=CONTENT, **overrides):
    arguments = dict(
        upload_id=ticket.upload_id,
        file_key=ticket.file_key,
        file_size=len(content),
        file_sha256=sha256_hex(content),
        idempotency_key=ticket.idempotency_key,
    )
    arguments.update(overrides)
    return await runtime.coordinator.complete(**arguments)


class TestInitiate:
    def test_issues_key_and_presigned_target(self, runtime):
        ticket = _initiate(runtime, file_name="Harga Juli 2024.csv")

        assert ticket.upload_id.startswith("imp_")
        today = utcnow().strftime("%Y-%m-%d")
        assert ticket.file_key == f"imports/pricelist/{today}/{ticket.upload_id}/Harga_Juli_2024.csv"
        assert ticket.upload_target["method"] == "PUT"
        assert ticket.upload_target["headers"] == {"Content-Type": "text/csv"}
        assert len(ticket.idempotency_key) >= 32
        assert ticket.expires_at > utcnow()

    def test_each_upload_gets_its_own_key(self, runtime):
        assert _initiate(runtime).idempotency_key != _initiate(runtime).idempotency_key

    def test_unknown_schema_type(self, runtime):
        with pytest.raises(InvalidSchemaType):
            _initiate(runtime, schema_type="invoices")

    def test_unsupported_file_type(self, runtime):
        with pytest.raises(UnsupportedContentType):
            runtime.coordinator.initiate("scan.pdf", "application/pdf", "pricelist")

    @pytest.mark.parametrize("raw,expected", [
        ("../../etc/pass wd.csv", "pass_wd.csv"),
        ("C:\\Users\\ani\\data.xlsx", "data.xlsx"),
        ("...", "upload"),
    ])
    def test_safe_file_name(self, raw, expected):
        assert safe_file_name(raw) == expected


class TestComplete:
    @pytest.mark.asyncio
    async def test_creates_and_runs_job(self, runtime, storage):
        ticket = _initiate(runtime)
        storage.put(ticket.file_key, CONTENT)

        result = await _complete(runtime, ticket)
        job = await runtime.launcher.wait(result.job_id)

        assert result.replayed is False
        assert result.status == "queued"
        assert job.phase == Phase.COMPLETED
        assert job.rows_written == 2

    @pytest.mark.asyncio
    async def test_repeat_returns_same_job(self, runtime, storage):
        ticket = _initiate(runtime)
        storage.put(ticket.file_key, CONTENT)

        first = await _complete(runtime, ticket)
        await runtime.launcher.wait(first.job_id)
        second = await _complete(runtime, ticket, file_sha256=sha256_hex(CONTENT).upper())

        assert second.job_id == first.job_id
        assert second.replayed is True
        assert second.status == "completed"
        assert len(runtime.store) == 1

    @pytest.mark.asyncio
    async def test_concurrent_completions_start_one_job(self, runtime, storage):
        ticket = _initiate(runtime)
        storage.put(ticket.file_key, CONTENT)

        results = await asyncio.gather(_complete(runtime, ticket), _complete(runtime, ticket))
        await runtime.launcher.wait(results[0].job_id)

        assert results[0].job_id == results[1].job_id
        assert sorted(result.replayed for result in results) == [False, True]
        assert len(runtime.store) == 1

    @pytest.mark.asyncio
    async def test_different_checksum_after_completion_conflicts(self, runtime, storage):
        ticket = _initiate(runtime)
        storage.put(ticket.file_key, CONTENT)
        first = await _complete(runtime, ticket)
        await runtime.launcher.wait(first.job_id)

        with pytest.raises(IdempotencyMismatch):
            await _complete(runtime, ticket, file_sha256="a" * 64)

    @pytest.mark.asyncio
    async def test_failed_job_can_be_completed_again(self, runtime, storage):
        ticket = _initiate(runtime)
        bad = csv_bytes([["name"], ["x"]])
        storage.put(ticket.file_key, bad)
        first = await _complete(runtime, ticket, content=bad)
        assert (await runtime.launcher.wait(first.job_id)).phase == Phase.FAILED

        storage.put(ticket.file_key, CONTENT)
        second = await _complete(runtime, ticket)
        job = await runtime.launcher.wait(second.job_id)

        assert second.job_id != first.job_id
        assert second.replayed is False
        assert job.phase == Phase.COMPLETED

    @pytest.mark.asyncio
    async def test_wrong_idempotency_key(self, runtime, storage):
        ticket = _initiate(runtime)
        storage.put(ticket.file_key, CONTENT)

        with pytest.raises(IdempotencyMismatch):
            await _complete(runtime, ticket, idempotency_key="not-the-issued-key")
        assert len(runtime.store) == 0

    @pytest.mark.asyncio
    async def test_wrong_file_key(self, runtime, storage):
        ticket = _initiate(runtime)
        storage.put(ticket.file_key, CONTENT)

        with pytest.raises(IdempotencyMismatch):
            await _complete(runtime, ticket, file_key="imports/pricelist/elsewhere.csv")

    @pytest.mark.asyncio
    async def test_oversized_file_creates_no_job(self, runtime, storage):
        ticket = _initiate(runtime)
        storage.put(ticket.file_key, CONTENT)

        with pytest.raises(PayloadTooLarge) as exc_info:
            await _complete(runtime, ticket, file_size=300 * 1024 * 1024)

        assert "50MB" in str(exc_info.value)
        assert len(runtime.store) == 0
        assert storage.opened == []

    @pytest.mark.asyncio
    async def test_object_must_exist(self, runtime):
        ticket = _initiate(runtime)

        with pytest.raises(UploadNotFound):
            await _complete(runtime, ticket)
        assert len(runtime.store) == 0

    @pytest.mark.asyncio
    async def test_unknown_upload(self, runtime):
        ticket = _initiate(runtime)

        with pytest.raises(UploadNotFound):
            await _complete(runtime, ticket, upload_id="imp_unknown")

    @pytest.mark.asyncio
    async def test_expired_upload_is_purged(self, runtime, storage):
        ticket = _initiate(runtime)
        storage.put(ticket.file_key, CONTENT)

        purged = runtime.coordinator.purge_expired(now=utcnow() + timedelta(days=1))

        assert purged == [ticket.upload_id]
        with pytest.raises(UploadNotFound):
            await _complete(runtime, ticket)

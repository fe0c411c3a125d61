"""
Tests for job state: phase ordering, snapshots and retention.
"""
from datetime import timedelta

import pytest

from app.domain.imports.errors import InvalidPhaseTransition, JobNotFound
from app.domain.imports.jobs import FailedRecord, FailureStage, JobStore, Phase, utcnow
from app.domain.imports.schema_mapper import SchemaType


def _create(store, schema_type=SchemaType.PRICELIST, idempotency_key="key"):
    return store.create(
        upload_id="imp_1",
        file_key="imports/x.csv",
        file_name="x.csv",
        content_type="text/csv",
        file_size=1,
        file_sha256="0" * 64,
        idempotency_key=idempotency_key,
        schema_type=schema_type,
    )


class TestPhases:
    def test_phases_only_move_forward(self, job_store):
        job = _create(job_store)

        assert job.advance_to(Phase.PARSING) is True
        assert job.advance_to(Phase.WRITING) is True
        assert job.advance_to(Phase.VALIDATING) is False
        assert job.phase == Phase.WRITING

    def test_terminal_phase_is_final(self, job_store):
        job = _create(job_store)
        job.advance_to(Phase.PARSING)
        job.eta_seconds = 12.0

        assert job.advance_to(Phase.COMPLETED) is True
        assert job.finished_at is not None
        assert job.eta_seconds is None
        assert job.advance_to(Phase.COMPLETED) is False
        with pytest.raises(InvalidPhaseTransition):
            job.advance_to(Phase.FAILED)

    def test_queued_job_can_be_cancelled(self, job_store):
        job = _create(job_store)
        assert job.advance_to(Phase.CANCELLED) is True
        assert job.is_terminal


class TestSnapshot:
    def test_running_snapshot_has_no_status(self, job_store):
        job = _create(job_store)
        snapshot = job.snapshot()

        assert snapshot["phase"] == "queued"
        assert snapshot["rows_total"] is None
        assert snapshot["eta_seconds"] is None
        assert "status" not in snapshot

    def test_terminal_snapshot_carries_summary(self, job_store):
        job = _create(job_store)
        job.rows_parsed, job.rows_valid, job.rows_written, job.rows_failed = 3, 2, 1, 1
        job.duplicates_removed = 1
        job.throughput_rows_per_sec = 123.456
        job.advance_to(Phase.COMPLETED)

        snapshot = job.snapshot()

        assert snapshot["status"] == "completed"
        assert snapshot["summary"] == "3 parsed, 2 valid, 1 written, 1 failed, 1 duplicates removed"
        assert snapshot["throughput_rps"] == 123.46
        assert snapshot["error_message"] is None

    def test_failed_record_lookup(self, job_store):
        job = _create(job_store)
        record = FailedRecord(original_index=4, raw_record={"a": "1"}, error_reason="bad", stage=FailureStage.PARSE)
        job.failed_records.append(record)

        assert job.find_failed_record(4) is record
        assert job.find_failed_record(5) is None
        assert record.to_dict()["stage"] == "parse"


class TestJobStore:
    def test_get_unknown_job(self, job_store):
        with pytest.raises(JobNotFound):
            job_store.get("job_missing")

    def test_list_filters_and_orders_newest_first(self, job_store):
        older = _create(job_store)
        newer = _create(job_store)
        newer.created_at = older.created_at + timedelta(seconds=1)
        staff = _create(job_store, schema_type=SchemaType.STAFF)

        assert [job.job_id for job in job_store.list(SchemaType.PRICELIST)] == [newer.job_id, older.job_id]
        assert job_store.list(SchemaType.STAFF) == [staff]
        assert len(job_store.list(limit=1)) == 1

    def test_find_by_idempotency_key(self, job_store):
        job = _create(job_store, idempotency_key="k1")
        _create(job_store, idempotency_key="k2")

        assert job_store.find_by_idempotency_key("k1") == [job]

    def test_purge_only_finished_jobs_past_retention(self):
        store = JobStore(retention_seconds=60)
        running = _create(store)
        running.advance_to(Phase.WRITING)
        finished = _create(store)
        finished.advance_to(Phase.COMPLETED)

        assert store.purge_expired(now=utcnow()) == []
        assert store.purge_expired(now=utcnow() + timedelta(seconds=61)) == [finished.job_id]
        assert len(store) == 1
        with pytest.raises(JobNotFound):
            store.get(finished.job_id)
        assert store.get(running.job_id) is running

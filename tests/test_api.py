"""
API tests for the upload and import job endpoints.
"""
import csv
import time
from io import StringIO

import pytest
from fastapi.testclient import TestClient

from app.api.dependencies import set_runtime
from app.domain.imports.schema_mapper import SchemaType
from app.main import app
from tests.utils.fakes import csv_bytes, sha256_hex

REQUEST_TIMEOUT = 5  # seconds
CONTENT = csv_bytes([["item_code", "price"], ["A1", "100"], ["B1", "abc"], ["C1", "300"]])


@pytest.fixture
def client(runtime):
    """Test client whose app uses the fake-backed import runtime."""
    set_runtime(runtime)
    with TestClient(app) as test_client:
        yield test_client
    set_runtime(None)


def _initiate(client, schema_type="pricelist", file_name="prices.csv"):
    response = client.post("/imports/initiate", json={
        "file_name": file_name,
        "content_type": "text/csv",
        "schema_type": schema_type,
    })
    assert response.status_code == 200, response.text
    return response.json()


def _complete(client, ticket, content=CONTENT, **overrides):
    payload = {
        "upload_id": ticket["upload_id"],
        "file_key": ticket["file_key"],
        "file_size": len(content),
        "file_sha256": sha256_hex(content),
        "idempotency_key": ticket["idempotency_key"],
    }
    payload.update(overrides)
    return client.post("/imports/complete", json=payload)


def _wait_for_terminal(client, job_id):
    deadline = time.monotonic() + REQUEST_TIMEOUT
    while time.monotonic() < deadline:
        job = client.get(f"/import-jobs/{job_id}").json()["job"]
        if job.get("status"):
            return job
        time.sleep(0.02)
    pytest.fail(f"Import job {job_id} did not finish in time")


def _import(client, storage, content=CONTENT):
    ticket = _initiate(client)
    storage.put(ticket["file_key"], content)
    response = _complete(client, ticket, content)
    assert response.status_code == 202, response.text
    return ticket, _wait_for_terminal(client, response.json()["job_id"])


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Bulk Import API", "version": "1.0.0"}
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["service"] == "bulk-import-api"
    assert health["timestamp"].endswith("+00:00")


def test_initiate_returns_upload_target(client):
    ticket = _initiate(client)

    assert ticket["success"] is True
    assert ticket["upload_id"].startswith("imp_")
    assert ticket["upload_target"]["method"] == "PUT"
    assert ticket["file_key"].endswith(f"/{ticket['upload_id']}/prices.csv")


def test_full_import_flow(client, storage):
    ticket, job = _import(client, storage)

    assert job["status"] == "completed"
    assert job["phase"] == "completed"
    assert (job["rows_parsed"], job["rows_valid"], job["rows_written"], job["rows_failed"]) == (3, 2, 2, 1)
    assert job["summary"] == "3 parsed, 2 valid, 2 written, 1 failed"
    assert job["eta_seconds"] is None

    replay = _complete(client, ticket)
    assert replay.status_code == 202
    assert replay.json()["job_id"] == job["job_id"]
    assert replay.json()["replayed"] is True


def test_event_stream_ends_with_complete_event(client, storage):
    _, job = _import(client, storage)

    with client.stream("GET", f"/import-jobs/{job['job_id']}/events") as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        body = "".join(response.iter_text())

    assert body.count("event: complete") == 1
    assert '"status": "completed"' in body


def test_list_jobs(client, storage):
    _, job = _import(client, storage)

    listing = client.get("/import-jobs", params={"schema_type": "pricelist"}).json()
    assert [item["job_id"] for item in listing["jobs"]] == [job["job_id"]]
    assert client.get("/import-jobs", params={"schema_type": "staff"}).json()["jobs"] == []
    assert client.get("/import-jobs", params={"schema_type": "invoices"}).status_code == 400


def test_failed_records_and_csv_export(client, storage):
    _, job = _import(client, storage)
    job_id = job["job_id"]

    failed = client.get(f"/import-jobs/{job_id}/failed-records").json()
    assert failed["rows_failed"] == 1
    record = failed["failed_records"][0]
    assert record["original_index"] == 2
    assert record["stage"] == "validate"
    assert record["raw_record"] == {"item_code": "B1", "price": "abc"}

    response = client.get(f"/import-jobs/{job_id}/failed-records.csv")
    assert response.status_code == 200
    assert response.headers["x-row-count"] == "1"
    rows = list(csv.reader(StringIO(response.text)))
    assert rows[0] == ["row_number", "stage", "error_reason", "item_code", "price"]
    assert rows[1][0] == "2"
    assert rows[1][3:] == ["B1", "abc"]


def test_retry_failed_record(client, storage):
    _, job = _import(client, storage)
    job_id = job["job_id"]

    response = client.post(f"/import-jobs/{job_id}/retry", json={
        "original_index": 2,
        "corrected_record": {"item_code": "B1", "price": "250"},
    })
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["failed_records"] == []
    assert body["job"]["rows_written"] == 3
    assert body["job"]["rows_failed"] == 0

    again = client.post(f"/import-jobs/{job_id}/retry", json={
        "original_index": 2,
        "corrected_record": {"item_code": "B1", "price": "250"},
    })
    assert again.status_code == 404


def test_unsuccessful_retry_is_not_an_http_error(client, storage):
    _, job = _import(client, storage)

    response = client.post(f"/import-jobs/{job['job_id']}/retry", json={
        "original_index": 2,
        "corrected_record": {"item_code": "B1", "price": "still wrong"},
    })

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert "normal_price" in response.json()["error_reason"]


def test_retry_while_running_conflicts(client, runtime):
    job = runtime.store.create(
        upload_id="imp_x", file_key="imports/x.csv", file_name="x.csv", content_type="text/csv",
        file_size=1, file_sha256="0" * 64, idempotency_key="k", schema_type=SchemaType.PRICELIST,
    )

    response = client.post(f"/import-jobs/{job.job_id}/retry", json={
        "original_index": 1, "corrected_record": {},
    })
    assert response.status_code == 409


def test_cancel_finished_job_is_noop(client, storage):
    _, job = _import(client, storage)

    response = client.post(f"/import-jobs/{job['job_id']}/cancel")

    assert response.status_code == 200
    assert response.json()["job"]["phase"] == "completed"


def test_unknown_job_is_404(client):
    assert client.get("/import-jobs/job_missing").status_code == 404
    assert client.get("/import-jobs/job_missing/events").status_code == 404
    assert client.post("/import-jobs/job_missing/cancel").status_code == 404
    assert client.get("/import-jobs/job_missing/failed-records.csv").status_code == 404


def test_upload_errors(client, storage):
    assert client.post("/imports/initiate", json={
        "file_name": "x.csv", "content_type": "text/csv", "schema_type": "invoices",
    }).status_code == 400
    assert client.post("/imports/initiate", json={
        "file_name": "x.pdf", "content_type": "application/pdf", "schema_type": "pricelist",
    }).status_code == 400

    ticket = _initiate(client)
    assert _complete(client, ticket).status_code == 404  # nothing uploaded yet

    storage.put(ticket["file_key"], CONTENT)
    assert _complete(client, ticket, file_size=300 * 1024 * 1024).status_code == 413
    assert _complete(client, ticket, idempotency_key="wrong").status_code == 409
    assert _complete(client, ticket, file_sha256="not-a-hash").status_code == 422

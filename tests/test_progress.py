"""
Tests for progress publishing: coalescing, rate bounds, terminal delivery and
throughput/ETA estimation.
"""
import pytest

from app.domain.imports.errors import JobNotFound
from app.domain.imports.jobs import Phase
from app.domain.imports.progress import ProgressPublisher, ThroughputEstimator, estimate_eta
from app.domain.imports.schema_mapper import SchemaType


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _job(store):
    return store.create(
        upload_id="imp_1",
        file_key="imports/pricelist/2024-01-01/imp_1/prices.csv",
        file_name="prices.csv",
        content_type="text/csv",
        file_size=10,
        file_sha256="0" * 64,
        idempotency_key="key",
        schema_type=SchemaType.PRICELIST,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def publisher(job_store, clock):
    return ProgressPublisher(job_store, emit_every_rows=10, emit_interval_seconds=5, clock=clock)


class TestThroughput:
    def test_first_rate_is_raw_then_smoothed(self):
        estimator = ThroughputEstimator(window_seconds=10, alpha=0.3)
        assert estimator.observe(0, now=0.0) is None
        assert estimator.observe(100, now=1.0) == pytest.approx(100.0)
        # Raw rate over the window is 300 rows / 2s = 150
        assert estimator.observe(300, now=2.0) == pytest.approx(0.3 * 150 + 0.7 * 100)

    def test_old_samples_leave_the_window(self):
        estimator = ThroughputEstimator(window_seconds=2, alpha=1.0)
        for second, rows in enumerate([0, 100, 200, 800]):
            rate = estimator.observe(rows, now=float(second))
        # Window now starts at t=1
        assert rate == pytest.approx((800 - 100) / 2)

    def test_eta_needs_known_total_and_positive_rate(self):
        assert estimate_eta(None, 10, 5.0) is None
        assert estimate_eta(100, 10, None) is None
        assert estimate_eta(100, 10, 0.0) is None
        assert estimate_eta(1000, 400, 100.0) == pytest.approx(6.0)
        assert estimate_eta(10, 20, 1.0) == 0


class TestRateBounds:
    def test_emits_on_row_step_interval_or_phase_change(self, job_store, publisher, clock):
        job = _job(job_store)
        job.advance_to(Phase.PARSING)

        assert publisher.publish(job) is True
        job.rows_parsed = 3
        assert publisher.publish(job) is False
        job.rows_parsed = 10
        assert publisher.publish(job) is True

        job.rows_parsed = 11
        clock.now = 5.0
        assert publisher.publish(job) is True

        job.advance_to(Phase.VALIDATING)
        assert publisher.publish(job) is True

    def test_force_bypasses_bounds(self, job_store, publisher):
        job = _job(job_store)
        assert publisher.publish(job) is True
        assert publisher.publish(job) is False
        assert publisher.publish(job, force=True) is True


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_slow_subscriber_sees_only_latest(self, job_store, publisher):
        job = _job(job_store)
        subscription = publisher.subscribe(job.job_id)

        for rows in (10, 20, 30):
            job.rows_parsed = rows
            publisher.publish(job, force=True)

        snapshot = await subscription.__anext__()
        assert snapshot["rows_parsed"] == 30
        assert subscription.dropped == 3
        subscription.close()

    @pytest.mark.asyncio
    async def test_terminal_snapshot_ends_stream(self, job_store, publisher):
        job = _job(job_store)
        first = publisher.subscribe(job.job_id)
        second = publisher.subscribe(job.job_id)
        assert publisher.subscriber_count(job.job_id) == 2

        job.rows_parsed = 5
        job.advance_to(Phase.COMPLETED)
        publisher.publish_terminal(job)
        # Late offers after the terminal one are ignored
        first.offer({"phase": "writing"})

        for subscription in (first, second):
            snapshots = [snapshot async for snapshot in subscription]
            assert len(snapshots) == 1
            assert snapshots[0]["status"] == "completed"
            assert snapshots[0]["rows_parsed"] == 5
        assert publisher.subscriber_count(job.job_id) == 0

    @pytest.mark.asyncio
    async def test_subscribing_to_finished_job_yields_final_snapshot(self, job_store, publisher):
        job = _job(job_store)
        job.error_message = "Import stalled: no progress for 300 seconds"
        job.advance_to(Phase.FAILED)

        snapshots = [snapshot async for snapshot in publisher.subscribe(job.job_id)]

        assert [s["status"] for s in snapshots] == ["failed"]
        assert snapshots[0]["error_message"].startswith("Import stalled")
        assert publisher.subscriber_count(job.job_id) == 0

    @pytest.mark.asyncio
    async def test_publish_of_terminal_job_is_terminal_delivery(self, job_store, publisher):
        job = _job(job_store)
        subscription = publisher.subscribe(job.job_id)
        job.advance_to(Phase.CANCELLED)

        assert publisher.publish(job) is True
        snapshots = [snapshot async for snapshot in subscription]
        assert snapshots[-1]["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self, job_store, publisher):
        job = _job(job_store)
        subscription = publisher.subscribe(job.job_id)
        subscription.close()

        assert publisher.subscriber_count(job.job_id) == 0
        assert [snapshot async for snapshot in subscription] == []

    def test_unknown_job(self, publisher):
        with pytest.raises(JobNotFound):
            publisher.subscribe("job_missing")
        with pytest.raises(JobNotFound):
            publisher.snapshot("job_missing")

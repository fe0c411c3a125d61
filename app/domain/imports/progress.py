"""
Progress fan-out for running import jobs.

The runner calls ``publish`` as counters move; the publisher decides whether
the update is worth emitting (row step, time interval, or phase change) and
hands the snapshot to every subscriber. A subscription holds only the newest
undelivered snapshot, so a slow consumer sees fewer intermediate updates but
never delays the runner. The terminal snapshot always reaches every current
subscriber, after which their streams end.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Set, Tuple

from app.domain.imports.jobs import ImportJob, JobStore

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Any]


class ThroughputEstimator:
    """
    Smoothed rows/second over a trailing window of ``rows_parsed`` samples.

    The raw rate across the window is fed through an exponentially weighted
    moving average so single slow chunks do not make the ETA jump around.
    """

    def __init__(self, window_seconds: float, alpha: float = 0.3, clock: Callable[[], float] = time.monotonic):
        self._window = window_seconds
        self._alpha = alpha
        self._clock = clock
        self._samples: Deque[Tuple[float, int]] = deque()
        self.rate: Optional[float] = None

    def observe(self, rows: int, now: Optional[float] = None) -> Optional[float]:
        now = self._clock() if now is None else now
        self._samples.append((now, rows))
        while len(self._samples) > 2 and now - self._samples[1][0] >= self._window:
            self._samples.popleft()

        oldest_at, oldest_rows = self._samples[0]
        elapsed = now - oldest_at
        if elapsed <= 0:
            return self.rate

        instantaneous = max(rows - oldest_rows, 0) / elapsed
        if self.rate is None:
            self.rate = instantaneous
        else:
            self.rate = self._alpha * instantaneous + (1 - self._alpha) * self.rate
        return self.rate


def estimate_eta(rows_total: Optional[int], rows_written: int, throughput: Optional[float]) -> Optional[float]:
    if rows_total is None or not throughput or throughput <= 0:
        return None
    return max(rows_total - rows_written, 0) / throughput


class Subscription:
    """Async iterator over progress snapshots for one job."""

    def __init__(self, publisher: "ProgressPublisher", job_id: str):
        self.job_id = job_id
        self._publisher = publisher
        self._latest: Optional[Snapshot] = None
        self._terminal = False
        self._ended = False
        self._closed = False
        self._wakeup = asyncio.Event()
        self.dropped = 0

    def offer(self, snapshot: Snapshot, terminal: bool = False) -> None:
        if self._closed or self._terminal:
            return
        if self._latest is not None:
            self.dropped += 1
        self._latest = snapshot
        self._terminal = terminal
        self._wakeup.set()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Snapshot:
        while True:
            if self._latest is not None:
                snapshot, self._latest = self._latest, None
                if self._terminal:
                    self._ended = True
                return snapshot
            if self._ended or self._closed:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._latest = None
        self._publisher.unsubscribe(self)
        self._wakeup.set()


class ProgressPublisher:
    def __init__(
        self,
        store: JobStore,
        emit_every_rows: int,
        emit_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._emit_every_rows = emit_every_rows
        self._emit_interval = emit_interval_seconds
        self._clock = clock
        self._subscribers: Dict[str, Set[Subscription]] = {}
        # job_id -> (emitted_at, rows_parsed, phase)
        self._last_emit: Dict[str, Tuple[float, int, str]] = {}

    def snapshot(self, job_id: str) -> Snapshot:
        """Point-in-time progress; raises JobNotFound for purged jobs."""
        return self._store.get(job_id).snapshot()

    def subscribe(self, job_id: str) -> Subscription:
        job = self._store.get(job_id)
        subscription = Subscription(self, job_id)
        if job.is_terminal:
            subscription.offer(job.snapshot(), terminal=True)
            return subscription
        self._subscribers.setdefault(job_id, set()).add(subscription)
        subscription.offer(job.snapshot())
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.job_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.job_id]

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def _should_emit(self, job: ImportJob, now: float) -> bool:
        last = self._last_emit.get(job.job_id)
        if last is None:
            return True
        emitted_at, rows_parsed, phase = last
        return (
            phase != job.phase.value
            or job.rows_parsed - rows_parsed >= self._emit_every_rows
            or now - emitted_at >= self._emit_interval
        )

    def publish(self, job: ImportJob, force: bool = False) -> bool:
        """Best-effort, rate-bounded emission. Returns True if a snapshot went out."""
        if job.is_terminal:
            self.publish_terminal(job)
            return True
        now = self._clock()
        if not force and not self._should_emit(job, now):
            return False
        self._last_emit[job.job_id] = (now, job.rows_parsed, job.phase.value)
        subscribers = self._subscribers.get(job.job_id)
        if subscribers:
            snapshot = job.snapshot()
            for subscription in list(subscribers):
                subscription.offer(snapshot)
        return True

    def publish_terminal(self, job: ImportJob) -> None:
        """Deliver the final snapshot to every subscriber and end their streams."""
        self._last_emit.pop(job.job_id, None)
        subscribers = self._subscribers.pop(job.job_id, set())
        snapshot = job.snapshot()
        for subscription in subscribers:
            subscription.offer(snapshot, terminal=True)
        logger.debug("Terminal snapshot for %s delivered to %d subscribers", job.job_id, len(subscribers))

from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import FakeClock
from sqlalchemy.exc import OperationalError

from crawl_fleet.queue.job_queue import TIMED_OUT_MESSAGE, JobQueue
from crawl_fleet.queue.models import (
    JobNotFoundError,
    JobStatus,
    JobView,
    LogStatus,
    ResultSummary,
    SourceMetricWrite,
)
from crawl_fleet.queue.repository import MAX_RETRIES_SUFFIX, JobStore

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Claim / Retry / Timeout Protocol"),
]


def test_claim_sets_owner_and_deadline(job_queue: JobQueue, clock: FakeClock) -> None:
    job = job_queue.submit("Austin, TX")
    assert job.status == JobStatus.PENDING
    assert job.worker_id is None
    assert job.retry_count == 0
    assert job.max_retries == 3

    claimed = job_queue.claim_next("worker-a")

    assert claimed is not None
    assert claimed.job_id == job.job_id
    assert claimed.status == JobStatus.RUNNING
    assert claimed.worker_id == "worker-a"
    assert claimed.started_at == clock.now
    assert claimed.timeout_at == clock.now + timedelta(seconds=600)
    assert job_queue.in_flight == frozenset({job.job_id})
    assert job_queue.claim_next("worker-b") is None


def test_claim_order_is_fifo_by_creation(job_queue: JobQueue, clock: FakeClock) -> None:
    submitted = []
    for target in ("Austin", "Boston", "Chicago"):
        submitted.append(job_queue.submit(target).job_id)
        clock.advance(1)

    claimed = [job_queue.claim_next(f"worker-{index}") for index in range(3)]

    assert [job.job_id for job in claimed if job is not None] == submitted
    assert job_queue.claim_next("worker-x") is None


def test_submit_rejects_empty_target_and_bad_retry_budget(job_queue: JobQueue) -> None:
    with pytest.raises(ValueError, match="non-empty"):
        job_queue.submit("   ")
    with pytest.raises(ValueError, match="max_retries"):
        job_queue.submit("Austin", max_retries=0)


def _claim_in_thread(
    db_path: Path,
    worker_id: str,
    barrier: threading.Barrier,
    winners: list[str],
    lock: threading.Lock,
) -> None:
    store = JobStore(db_path)
    try:
        barrier.wait(timeout=5)
        job = JobQueue(store).claim_next(worker_id)
        if job is not None:
            with lock:
                winners.append(worker_id)
    finally:
        store.close()


def test_concurrent_claims_have_exactly_one_winner(store: JobStore, job_queue: JobQueue) -> None:
    job = job_queue.submit("Denver")
    contenders = 8
    barrier = threading.Barrier(contenders)
    winners: list[str] = []
    lock = threading.Lock()
    threads = [
        threading.Thread(
            target=_claim_in_thread,
            args=(store.db_path, f"worker-{index}", barrier, winners, lock),
        )
        for index in range(contenders)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(winners) == 1
    stored = store.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.RUNNING
    assert stored.worker_id == winners[0]
    claimed_events = [
        event
        for event in store.get_job_details(job_id=job.job_id).events
        if event.event_type == "claimed"
    ]
    assert len(claimed_events) == 1


def test_retries_are_bounded_by_max_retries(job_queue: JobQueue, store: JobStore) -> None:
    job = job_queue.submit("El Paso", max_retries=3)

    outcomes = []
    for attempt in range(3):
        assert job_queue.claim_next(f"worker-{attempt}") is not None
        outcomes.append(job_queue.fail(job.job_id, "boom"))

    assert [view.status for view in outcomes if view is not None] == [
        JobStatus.PENDING,
        JobStatus.PENDING,
        JobStatus.FAILED,
    ]
    assert [view.retry_count for view in outcomes if view is not None] == [1, 2, 3]
    final = store.get_job(job_id=job.job_id)
    assert final is not None
    assert final.status == JobStatus.FAILED
    assert final.worker_id is None
    assert final.completed_at is not None
    assert final.error_message == f"boom {MAX_RETRIES_SUFFIX}"

    assert job_queue.fail(job.job_id, "again") is None
    assert job_queue.claim_next("worker-late") is None


def test_requeued_job_clears_owner_and_records_error(job_queue: JobQueue) -> None:
    job = job_queue.submit("Fresno")
    job_queue.claim_next("worker-a")

    requeued = job_queue.fail(job.job_id, "transient")

    assert requeued is not None
    assert requeued.status == JobStatus.PENDING
    assert requeued.worker_id is None
    assert requeued.timeout_at is None
    assert requeued.error_message == "transient"


def test_reap_timeouts_returns_abandoned_job_to_queue(
    job_queue: JobQueue,
    store: JobStore,
    clock: FakeClock,
) -> None:
    job = job_queue.submit("Garland")
    assert job_queue.claim_next("worker-dead") is not None

    clock.advance(599)
    assert job_queue.reap_timeouts() == []

    clock.advance(2)
    reaped = job_queue.reap_timeouts()

    assert [view.job_id for view in reaped] == [job.job_id]
    recovered = store.get_job(job_id=job.job_id)
    assert recovered is not None
    assert recovered.status == JobStatus.PENDING
    assert recovered.retry_count == 1
    assert recovered.worker_id is None
    assert recovered.error_message == TIMED_OUT_MESSAGE

    reclaimed = job_queue.claim_next("worker-live")
    assert reclaimed is not None
    assert reclaimed.job_id == job.job_id
    assert job_queue.complete(job.job_id, ResultSummary(), worker_id="worker-live")


def test_completion_is_idempotent(job_queue: JobQueue, store: JobStore) -> None:
    job = job_queue.submit("Houston")
    job_queue.claim_next("worker-a")
    summary = ResultSummary(items_found=4, sources=["echo", "page"], failed_sources=["flaky"])

    assert job_queue.complete(job.job_id, summary, worker_id="worker-a") is True
    assert job_queue.complete(job.job_id, ResultSummary(items_found=99)) is False
    assert job_queue.fail(job.job_id, "late failure") is None

    stored = store.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED
    assert stored.worker_id is None
    assert stored.timeout_at is None
    assert stored.summary == summary
    events = store.get_job_details(job_id=job.job_id).events  # type: ignore[union-attr]
    assert [event.event_type for event in events] == [
        "submitted",
        "claimed",
        "completed",
        "complete_ignored",
    ]
    assert events[-1].status_to == JobStatus.COMPLETED
    assert events[-1].details["reason"] == "already terminal"


def test_stale_owner_cannot_complete_reassigned_job(
    job_queue: JobQueue,
    store: JobStore,
    clock: FakeClock,
) -> None:
    job = job_queue.submit("Irvine")
    job_queue.claim_next("worker-a")
    clock.advance(601)
    job_queue.reap_timeouts()
    assert job_queue.claim_next("worker-b") is not None

    assert job_queue.complete(job.job_id, ResultSummary(), worker_id="worker-a") is False
    assert job_queue.complete(job.job_id, ResultSummary(), worker_id="worker-b") is True

    ignored = [
        event
        for event in store.get_job_details(job_id=job.job_id).events  # type: ignore[union-attr]
        if event.event_type == "complete_ignored"
    ]
    assert len(ignored) == 1
    assert ignored[0].details == {"reason": "not the current owner", "worker_id": "worker-a"}


def test_lagging_reaper_leaves_reclaimed_job_alone(
    job_queue: JobQueue,
    store: JobStore,
    db_path: Path,
    clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = job_queue.submit("Lubbock")
    job_queue.claim_next("worker-a")
    clock.advance(601)

    other_store = JobStore(db_path)
    other_queue = JobQueue(other_store, clock=clock)
    scan = store.list_timed_out_jobs

    def _scan_then_lose_the_race(**kwargs: object) -> list[JobView]:
        expired = scan(**kwargs)  # type: ignore[arg-type]
        # Another process reaps the same job and a live worker reclaims it.
        assert [view.job_id for view in other_queue.reap_timeouts()] == [job.job_id]
        assert other_queue.claim_next("worker-c") is not None
        return expired

    monkeypatch.setattr(store, "list_timed_out_jobs", _scan_then_lose_the_race)
    try:
        assert job_queue.reap_timeouts() == []
    finally:
        other_store.close()

    current = store.get_job(job_id=job.job_id)
    assert current is not None
    assert current.status == JobStatus.RUNNING
    assert current.worker_id == "worker-c"
    assert current.retry_count == 1
    assert job_queue.claim_next("worker-d") is None


def test_stale_owner_cannot_fail_reassigned_job(
    job_queue: JobQueue,
    store: JobStore,
    clock: FakeClock,
) -> None:
    job = job_queue.submit("Lincoln")
    job_queue.claim_next("worker-a")
    clock.advance(601)
    job_queue.reap_timeouts()
    assert job_queue.claim_next("worker-c") is not None

    assert job_queue.fail(job.job_id, "late crash", worker_id="worker-a") is None

    current = store.get_job(job_id=job.job_id)
    assert current is not None
    assert (current.status, current.worker_id, current.retry_count) == (
        JobStatus.RUNNING,
        "worker-c",
        1,
    )

    requeued = job_queue.fail(job.job_id, "real crash", worker_id="worker-c")
    assert requeued is not None
    assert requeued.status == JobStatus.PENDING
    assert requeued.retry_count == 2


def test_completion_store_error_routes_job_to_fail(
    job_queue: JobQueue,
    store: JobStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = job_queue.submit("Madison")
    job_queue.claim_next("worker-a")

    def _locked(**_: object) -> bool:
        raise OperationalError("UPDATE jobs", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "complete_job", _locked)

    assert job_queue.complete(job.job_id, ResultSummary(), worker_id="worker-a") is False

    requeued = store.get_job(job_id=job.job_id)
    assert requeued is not None
    assert requeued.status == JobStatus.PENDING
    assert requeued.retry_count == 1
    assert requeued.worker_id is None
    assert requeued.error_message is not None
    assert requeued.error_message.startswith("Could not record completion:")
    assert "database is locked" in requeued.error_message


def test_store_errors_degrade_to_no_job(
    job_queue: JobQueue,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = job_queue.submit("Jackson")

    def _locked(**_: object) -> None:
        raise OperationalError("UPDATE jobs", {}, Exception("database is locked"))

    monkeypatch.setattr(job_queue.store, "claim_next_job", _locked)
    monkeypatch.setattr(job_queue.store, "complete_job", _locked)
    monkeypatch.setattr(job_queue.store, "fail_job", _locked)
    monkeypatch.setattr(job_queue.store, "list_timed_out_jobs", _locked)

    assert job_queue.claim_next("worker-a") is None
    assert job_queue.complete(job.job_id, ResultSummary()) is False
    assert job_queue.fail(job.job_id, "boom") is None
    assert job_queue.reap_timeouts() == []


def test_manual_retry_resets_failed_job(job_queue: JobQueue) -> None:
    job = job_queue.submit("Kansas City", max_retries=1)
    job_queue.claim_next("worker-a")
    failed = job_queue.fail(job.job_id, "fatal")
    assert failed is not None
    assert failed.status == JobStatus.FAILED

    retried = job_queue.retry(job.job_id)

    assert retried.status == JobStatus.PENDING
    assert retried.retry_count == 0
    assert retried.error_message is None
    assert job_queue.claim_next("worker-b") is not None


def test_manual_retry_rejects_unknown_and_non_failed_jobs(job_queue: JobQueue) -> None:
    job = job_queue.submit("Lincoln")
    with pytest.raises(JobNotFoundError):
        job_queue.retry("missing")
    with pytest.raises(RuntimeError, match="Only failed jobs"):
        job_queue.retry(job.job_id)


def test_stats_logs_metrics_and_items(job_queue: JobQueue, store: JobStore) -> None:
    first = job_queue.submit("Miami")
    job_queue.submit("Newark")
    job_queue.claim_next("worker-a")

    job_queue.add_log(first.job_id, "echo", "Starting executor", LogStatus.PROCESSING)
    job_queue.add_log(first.job_id, "echo", "Completed: 2 items found", LogStatus.SUCCESS, 2)
    saved = job_queue.save_items(
        first.job_id,
        "echo",
        first.target,
        [{"name": "a"}, {"name": "b"}],
    )
    job_queue.record_metrics(
        SourceMetricWrite(
            source="echo",
            requests_count=4,
            success_count=3,
            error_count=1,
            avg_response_time_ms=120,
            items_found=2,
            job_id=first.job_id,
        ),
    )

    assert saved == 2
    assert store.count_items(job_id=first.job_id) == 2
    stats = job_queue.stats()
    assert (stats.pending, stats.running, stats.completed, stats.failed) == (1, 1, 0, 0)
    assert stats.total == 2
    details = store.get_job_details(job_id=first.job_id)
    assert details is not None
    assert [log.status for log in details.logs] == [LogStatus.PROCESSING, LogStatus.SUCCESS]
    assert details.logs[1].item_count == 2
    metrics = store.list_metrics()
    assert len(metrics) == 1
    assert metrics[0].requests_count == 4
    assert metrics[0].avg_response_time_ms == 120

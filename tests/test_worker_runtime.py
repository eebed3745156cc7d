from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from conftest import FakeClock

from crawl_fleet.executors.base import ExecutionResult
from crawl_fleet.executors.echo import EchoExecutor
from crawl_fleet.queue.job_queue import JobQueue
from crawl_fleet.queue.models import JobStatus, LogStatus, WorkerStatus
from crawl_fleet.queue.repository import JobStore
from crawl_fleet.runtime.registry import WorkerRegistry
from crawl_fleet.runtime.worker import WorkerRuntime
from crawl_fleet.storage.common import utc_now

pytestmark = [
    allure.epic("Fleet Runtime"),
    allure.feature("Worker Loop"),
]


class FlakyExecutor:
    source = "flaky"

    def __init__(self) -> None:
        self.calls: list[str] = []

    def execute(self, target: str) -> ExecutionResult:
        self.calls.append(target)
        raise RuntimeError("upstream returned garbage")


def _worker(
    job_queue: JobQueue,
    registry: WorkerRegistry,
    *executors: object,
    worker_id: str = "worker-test",
) -> WorkerRuntime:
    return WorkerRuntime(
        queue=job_queue,
        registry=registry,
        executors=list(executors) or [EchoExecutor()],  # type: ignore[list-item]
        worker_id=worker_id,
        poll_interval_seconds=0,
        heartbeat_interval_seconds=60,
    )


def test_run_once_completes_job_and_persists_items(
    job_queue: JobQueue,
    store: JobStore,
    registry: WorkerRegistry,
) -> None:
    job = job_queue.submit("Portland")
    worker = _worker(job_queue, registry, EchoExecutor(item_count=2))
    worker.start()
    try:
        summary = worker.run_once()
    finally:
        worker.stop()

    assert (summary.processed, summary.completed, summary.failed) == (1, 1, 0)
    stored = store.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED
    assert stored.summary.items_found == 2
    assert stored.summary.sources == ["echo"]
    assert stored.summary.failed_sources == []
    assert store.count_items(job_id=job.job_id) == 2

    details = store.get_job_details(job_id=job.job_id)
    assert details is not None
    assert [(log.source, log.message) for log in details.logs] == [
        ("worker", "Job assigned to worker worker-test"),
        ("echo", "Starting executor"),
        ("echo", "Completed: 2 items found"),
    ]
    assert worker.jobs_processed == 1
    assert worker.errors_count == 0


def test_failing_executor_is_isolated_from_the_job(
    job_queue: JobQueue,
    store: JobStore,
    registry: WorkerRegistry,
) -> None:
    job = job_queue.submit("Raleigh")
    flaky = FlakyExecutor()
    worker = _worker(job_queue, registry, flaky, EchoExecutor(item_count=1))

    summary = worker.run_once()

    assert summary.completed == 1
    assert flaky.calls == ["Raleigh"]
    stored = store.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED
    assert stored.retry_count == 0
    assert stored.summary.sources == ["echo"]
    assert stored.summary.failed_sources == ["flaky"]
    assert stored.summary.items_found == 1
    assert worker.errors_count == 1

    details = store.get_job_details(job_id=job.job_id)
    assert details is not None
    errors = [log for log in details.logs if log.status == LogStatus.ERROR]
    assert [(log.source, log.message) for log in errors] == [
        ("flaky", "Error: upstream returned garbage"),
    ]
    metrics = {metric.source: metric for metric in store.list_metrics()}
    assert metrics["flaky"].requests_count == 0
    assert metrics["flaky"].error_count == 1
    assert metrics["echo"].items_found == 1


def test_job_completes_even_when_every_source_fails(
    job_queue: JobQueue,
    store: JobStore,
    registry: WorkerRegistry,
) -> None:
    job = job_queue.submit("Spokane")
    worker = _worker(job_queue, registry, FlakyExecutor())

    worker.run_once()

    stored = store.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED
    assert stored.summary.sources == []
    assert stored.summary.failed_sources == ["flaky"]
    assert stored.summary.items_found == 0


def test_orchestration_error_routes_job_to_retry(
    job_queue: JobQueue,
    store: JobStore,
    registry: WorkerRegistry,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = job_queue.submit("Tulsa")
    worker = _worker(job_queue, registry)

    def _broken_complete(*_: object, **__: object) -> bool:
        raise RuntimeError("summary write exploded")

    monkeypatch.setattr(job_queue, "complete", _broken_complete)
    summary = worker.run_once()

    assert (summary.processed, summary.completed, summary.failed) == (1, 0, 1)
    stored = store.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.retry_count == 1
    assert stored.error_message == "summary write exploded"
    assert worker.errors_count == 1
    assert worker.jobs_processed == 1


def test_orchestration_error_after_reassignment_leaves_new_owner(
    job_queue: JobQueue,
    store: JobStore,
    registry: WorkerRegistry,
    clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = job_queue.submit("Wichita")
    worker = _worker(job_queue, registry)

    def _complete_after_losing_the_job(*_: object, **__: object) -> bool:
        clock.advance(601)
        job_queue.reap_timeouts()
        assert job_queue.claim_next("worker-c") is not None
        raise RuntimeError("summary write exploded")

    monkeypatch.setattr(job_queue, "complete", _complete_after_losing_the_job)
    summary = worker.run_once()

    assert summary.failed == 1
    stored = store.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.RUNNING
    assert stored.worker_id == "worker-c"
    assert stored.retry_count == 1
    assert stored.error_message == "timed out"


def test_finishing_a_job_does_not_revive_a_crashed_worker_row(
    job_queue: JobQueue,
    registry: WorkerRegistry,
) -> None:
    job_queue.submit("Yonkers")

    class SupervisorGivesUp:
        source = "slow"

        def execute(self, target: str) -> ExecutionResult:
            assert registry.mark_crashed(
                worker_id="worker-slow",
                heartbeat_before=utc_now() + timedelta(hours=1),
            )
            return ExecutionResult(source=self.source, target=target, items=[{"target": target}])

    worker = _worker(job_queue, registry, SupervisorGivesUp(), worker_id="worker-slow")
    worker.start()
    try:
        summary = worker.run_once()
        row = registry.get("worker-slow")
    finally:
        worker.stop()

    assert summary.completed == 1
    assert row is not None
    assert row.status == WorkerStatus.CRASHED
    assert registry.set_state(
        worker_id="worker-slow",
        status=WorkerStatus.IDLE,
        current_job_id=None,
    ) is False


def test_idle_poll_reports_no_work(job_queue: JobQueue, registry: WorkerRegistry) -> None:
    worker = _worker(job_queue, registry)

    summary = worker.run_once()

    assert (summary.processed, summary.idle_polls) == (0, 1)
    assert worker.jobs_processed == 0


def test_registration_heartbeat_and_stop(
    job_queue: JobQueue,
    registry: WorkerRegistry,
) -> None:
    worker = _worker(job_queue, registry, worker_id="worker-hb")
    worker.start()

    registered = registry.get("worker-hb")
    assert registered is not None
    assert registered.status == WorkerStatus.IDLE
    assert registered.last_heartbeat is not None

    worker.jobs_processed = 4
    worker.errors_count = 1
    assert worker.send_heartbeat() is True
    beaten = registry.get("worker-hb")
    assert beaten is not None
    assert (beaten.jobs_processed, beaten.errors_count) == (4, 1)

    worker.stop()
    stopped = registry.get("worker-hb")
    assert stopped is not None
    assert stopped.status == WorkerStatus.STOPPED
    assert stopped.stopped_at is not None
    assert worker.stop_requested


def test_run_loop_drains_queue_then_exits_on_idle(
    job_queue: JobQueue,
    store: JobStore,
    registry: WorkerRegistry,
) -> None:
    for target in ("Akron", "Boise", "Camden"):
        job_queue.submit(target)
    worker = _worker(job_queue, registry, worker_id="worker-loop")

    summary = worker.run_loop(max_idle_polls=1)

    assert (summary.processed, summary.completed, summary.idle_polls) == (3, 3, 1)
    assert job_queue.stats().completed == 3
    row = registry.get("worker-loop")
    assert row is not None
    assert row.status == WorkerStatus.STOPPED
    assert row.current_job_id is None


def test_run_loop_honours_max_jobs(job_queue: JobQueue, registry: WorkerRegistry) -> None:
    for target in ("Dayton", "Erie"):
        job_queue.submit(target)
    worker = _worker(job_queue, registry)

    summary = worker.run_loop(max_jobs=1)

    assert summary.processed == 1
    assert job_queue.stats().pending == 1

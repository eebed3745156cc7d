from __future__ import annotations

import json
from datetime import UTC, datetime

import allure

from crawl_fleet.proxies.pool import ProxyPoolManager
from crawl_fleet.queue.health import (
    collect_health,
    render_health_lines,
    snapshot_to_dict,
    summarize_metrics,
    summarize_workers,
)
from crawl_fleet.queue.job_queue import JobQueue
from crawl_fleet.queue.models import (
    SourceMetricView,
    SourceMetricWrite,
    WorkerInstanceView,
    WorkerStatus,
)
from crawl_fleet.queue.repository import JobStore
from crawl_fleet.runtime.registry import WorkerRegistry

pytestmark = [
    allure.epic("Fleet Runtime"),
    allure.feature("Health Reporting"),
]

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _worker(
    worker_id: str,
    status: WorkerStatus,
    processed: int,
    errors: int,
) -> WorkerInstanceView:
    return WorkerInstanceView(
        worker_id=worker_id,
        status=status,
        pid=100,
        last_heartbeat=NOW,
        jobs_processed=processed,
        errors_count=errors,
        current_job_id=None,
        started_at=NOW,
        stopped_at=None,
    )


def _metric(source: str, requests: int, successes: int, latency: int | None) -> SourceMetricView:
    return SourceMetricView(
        source=source,
        job_id="job-1",
        requests_count=requests,
        success_count=successes,
        error_count=requests - successes,
        avg_response_time_ms=latency,
        items_found=successes,
        created_at=NOW,
    )


def test_summarize_workers_counts_live_rows_and_error_rate() -> None:
    stats = summarize_workers(
        [
            _worker("worker-0", WorkerStatus.IDLE, 6, 1),
            _worker("worker-1", WorkerStatus.RUNNING, 2, 0),
            _worker("worker-2", WorkerStatus.CRASHED, 2, 2),
        ],
    )

    assert stats.active_workers == 2
    assert stats.total_jobs_processed == 10
    assert stats.total_errors == 3
    assert stats.error_rate == 30


def test_summarize_workers_with_no_jobs_has_zero_error_rate() -> None:
    assert summarize_workers([]).error_rate == 0


def test_summarize_metrics_groups_by_source() -> None:
    sources = summarize_metrics(
        [
            _metric("page", 4, 3, 100),
            _metric("echo", 0, 0, None),
            _metric("page", 6, 6, 201),
        ],
    )

    assert [source.source for source in sources] == ["page", "echo"]
    page = sources[0]
    assert (page.requests, page.successes, page.errors, page.items_found) == (10, 9, 1, 9)
    assert page.success_rate == 90
    assert page.avg_response_time_ms == 150
    assert sources[1].success_rate == 0


def test_collect_health_reads_every_store(
    store: JobStore,
    job_queue: JobQueue,
    registry: WorkerRegistry,
) -> None:
    job = job_queue.submit("Quincy")
    job_queue.submit("Reno")
    registry.register(worker_id="worker-0-abc", pid=321)
    job_queue.claim_next("worker-0-abc")
    job_queue.record_metrics(
        SourceMetricWrite(
            source="echo",
            requests_count=0,
            success_count=0,
            error_count=0,
            avg_response_time_ms=0,
            items_found=3,
            job_id=job.job_id,
        ),
    )
    pool = ProxyPoolManager(store.engine, probe=lambda url: None)
    pool.add_proxy("http://10.0.3.1:3128")

    snapshot = collect_health(queue=job_queue, registry=registry, proxy_pool=pool)

    assert snapshot.worker_stats.active_workers == 1
    assert (snapshot.jobs.pending, snapshot.jobs.running) == (1, 1)
    assert snapshot.proxies.active == 1
    assert [source.source for source in snapshot.sources] == ["echo"]

    lines = render_health_lines(snapshot)
    assert lines[0].startswith("Health at ")
    assert lines[1] == "Workers: active=1 jobs_processed=0 errors=0 error_rate=0%"
    assert lines[2] == "Jobs: pending=1 running=1 completed=0 failed=0"
    assert lines[3] == "Proxies: total=1 active=1 failed=0 testing=0 avg_success_rate=100%"
    assert "Worker instances:" in lines
    assert any(line.startswith("- worker-0-abc status=idle pid=321") for line in lines)
    assert "Sources:" in lines

    payload = json.loads(json.dumps(snapshot_to_dict(snapshot)))
    assert payload["workers"][0]["status"] == "idle"
    assert payload["proxies"]["total"] == 1
    assert payload["jobs"]["pending"] == 1
    assert payload["sources"][0]["items_found"] == 3

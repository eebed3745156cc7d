"""Read-only health view over workers, per-source metrics, proxies and jobs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from crawl_fleet.proxies.pool import ProxyPoolManager, ProxyPoolStats
from crawl_fleet.queue.job_queue import JobQueue
from crawl_fleet.queue.models import (
    LIVE_WORKER_STATUSES,
    QueueStats,
    SourceMetricView,
    WorkerInstanceView,
)
from crawl_fleet.runtime.registry import WorkerRegistry
from crawl_fleet.storage.common import utc_now

WORKER_LIMIT = 20
METRICS_LIMIT = 100


@dataclass(slots=True)
class WorkerStats:
    active_workers: int = 0
    total_jobs_processed: int = 0
    total_errors: int = 0
    error_rate: int = 0


@dataclass(slots=True)
class SourceStats:
    source: str
    requests: int = 0
    successes: int = 0
    errors: int = 0
    items_found: int = 0
    avg_response_time_ms: int = 0
    success_rate: int = 0


@dataclass(slots=True)
class HealthSnapshot:
    generated_at: datetime
    workers: list[WorkerInstanceView]
    worker_stats: WorkerStats
    sources: list[SourceStats]
    proxies: ProxyPoolStats
    jobs: QueueStats = field(default_factory=QueueStats)


def summarize_workers(workers: list[WorkerInstanceView]) -> WorkerStats:
    processed = sum(worker.jobs_processed for worker in workers)
    errors = sum(worker.errors_count for worker in workers)
    return WorkerStats(
        active_workers=sum(1 for worker in workers if worker.status in LIVE_WORKER_STATUSES),
        total_jobs_processed=processed,
        total_errors=errors,
        error_rate=round(errors / processed * 100) if processed > 0 else 0,
    )


def summarize_metrics(metrics: list[SourceMetricView]) -> list[SourceStats]:
    """Aggregate metric records by source, in order of first appearance."""

    by_source: dict[str, SourceStats] = {}
    latencies: dict[str, list[int]] = {}
    for metric in metrics:
        stats = by_source.setdefault(metric.source, SourceStats(source=metric.source))
        stats.requests += metric.requests_count
        stats.successes += metric.success_count
        stats.errors += metric.error_count
        stats.items_found += metric.items_found
        latencies.setdefault(metric.source, []).append(metric.avg_response_time_ms or 0)

    for source, stats in by_source.items():
        samples = latencies[source]
        stats.avg_response_time_ms = round(sum(samples) / len(samples)) if samples else 0
        stats.success_rate = (
            round(stats.successes / stats.requests * 100) if stats.requests > 0 else 0
        )
    return list(by_source.values())


def collect_health(
    *,
    queue: JobQueue,
    registry: WorkerRegistry,
    proxy_pool: ProxyPoolManager,
) -> HealthSnapshot:
    workers = registry.list_workers(limit=WORKER_LIMIT)
    metrics = queue.store.list_metrics(limit=METRICS_LIMIT)
    return HealthSnapshot(
        generated_at=utc_now(),
        workers=workers,
        worker_stats=summarize_workers(workers),
        sources=summarize_metrics(metrics),
        proxies=proxy_pool.stats(),
        jobs=queue.stats(),
    )


def snapshot_to_dict(snapshot: HealthSnapshot) -> dict[str, Any]:
    return _jsonable(asdict(snapshot))


def render_health_lines(snapshot: HealthSnapshot) -> list[str]:
    stats = snapshot.worker_stats
    jobs = snapshot.jobs
    proxies = snapshot.proxies
    lines = [
        f"Health at {snapshot.generated_at.isoformat()}",
        (
            f"Workers: active={stats.active_workers} jobs_processed={stats.total_jobs_processed} "
            f"errors={stats.total_errors} error_rate={stats.error_rate}%"
        ),
        (
            f"Jobs: pending={jobs.pending} running={jobs.running} "
            f"completed={jobs.completed} failed={jobs.failed}"
        ),
        (
            f"Proxies: total={proxies.total} active={proxies.active} failed={proxies.failed} "
            f"testing={proxies.testing} avg_success_rate={proxies.avg_success_rate}%"
        ),
    ]
    if snapshot.workers:
        lines.append("Worker instances:")
        for worker in snapshot.workers:
            heartbeat = worker.last_heartbeat.isoformat() if worker.last_heartbeat else "-"
            lines.append(
                f"- {worker.worker_id} status={worker.status.value} pid={worker.pid or '-'} "
                f"heartbeat={heartbeat} jobs={worker.jobs_processed} errors={worker.errors_count} "
                f"current_job={worker.current_job_id or '-'}",
            )
    if snapshot.sources:
        lines.append("Sources:")
        for source in snapshot.sources:
            lines.append(
                f"- {source.source} requests={source.requests} successes={source.successes} "
                f"errors={source.errors} items={source.items_found} "
                f"avg_ms={source.avg_response_time_ms} success_rate={source.success_rate}%",
            )
    return lines


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value

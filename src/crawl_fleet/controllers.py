"""Controllers for crawl-fleet CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from crawl_fleet.config import Settings
from crawl_fleet.queue.health import collect_health, render_health_lines, snapshot_to_dict
from crawl_fleet.queue.models import JobNotFoundError, JobStatus
from crawl_fleet.runtime.bootstrap import FleetComponents, build_worker_runtime, open_components
from crawl_fleet.runtime.supervisor import WorkerSupervisor


@dataclass(slots=True)
class SubmitJobCommand:
    db_path: Path | None
    targets: tuple[str, ...]
    max_retries: int | None


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobCommand:
    """CLI input for single-job inspect/retry operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for an in-process worker run."""

    db_path: Path | None
    worker_id: str | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class SupervisorCommand:
    db_path: Path | None
    workers: int | None
    auto_restart: bool | None


@dataclass(slots=True)
class ProxyCommand:
    db_path: Path | None
    proxy_url: str
    probe: bool = True


@dataclass(slots=True)
class HealthCommand:
    db_path: Path | None
    as_json: bool


class FleetCliController:
    """Coordinates queue, worker, supervisor and proxy CLI operations."""

    def submit(self, command: SubmitJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        max_retries = command.max_retries or settings.queue.job_max_retries
        with _components(settings) as components:
            jobs = [
                components.queue.submit(target, max_retries=max_retries)
                for target in command.targets
            ]
        return [
            f"Job submitted: job_id={job.job_id} target={job.target} "
            f"status={job.status.value} max_retries={job.max_retries}"
            for job in jobs
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = JobStatus(command.status) if command.status else None
        with _components(settings) as components:
            jobs = components.store.list_jobs(status=status, limit=command.limit)
            stats = components.queue.stats()

        lines = [
            f"Jobs: {len(jobs)} shown (pending={stats.pending} running={stats.running} "
            f"completed={stats.completed} failed={stats.failed})",
        ]
        for job in jobs:
            lines.append(
                f"  {job.job_id} target={job.target} status={job.status.value} "
                f"retries={job.retry_count}/{job.max_retries} worker={job.worker_id or '-'} "
                f"items={job.summary.items_found} created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _components(settings) as components:
            details = components.store.get_job_details(job_id=command.job_id)
            item_count = components.store.count_items(job_id=command.job_id)
        if details is None:
            raise JobNotFoundError(f"Job not found: {command.job_id}")

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Target: {job.target}",
            f"Status: {job.status.value}",
            f"Retries: {job.retry_count}/{job.max_retries}",
            f"Worker: {job.worker_id or '-'}",
            f"Timeout at: {job.timeout_at.isoformat() if job.timeout_at else '-'}",
            f"Error: {job.error_message or '-'}",
            f"Items: {job.summary.items_found} (stored={item_count})",
            f"Sources: {', '.join(job.summary.sources) or '-'}",
            f"Failed sources: {', '.join(job.summary.failed_sources) or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        lines.append(f"Logs: {len(details.logs)}")
        for log in details.logs:
            lines.append(
                f"  {log.created_at.isoformat()} [{log.source}] {log.status.value}: {log.message}",
            )
        return lines

    def retry_job(self, command: JobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _components(settings) as components:
            job = components.queue.retry(command.job_id)
        return [f"Job requeued: job_id={job.job_id} status={job.status.value}"]

    def reap(self, db_path: Path | None) -> list[str]:
        settings = _settings(db_path)
        with _components(settings) as components:
            reaped = components.queue.reap_timeouts()
        lines = [f"Timed-out jobs reaped: {len(reaped)}"]
        for job in reaped:
            lines.append(
                f"  {job.job_id} status={job.status.value} "
                f"retries={job.retry_count}/{job.max_retries}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _components(settings) as components:
            if settings.proxy.use_proxy:
                components.proxy_pool.start_health_checks(
                    settings.proxy.health_check_interval_seconds,
                )
            runtime = build_worker_runtime(settings, components, worker_id=command.worker_id)
            if command.once:
                runtime.start()
                try:
                    summary = runtime.run_once()
                finally:
                    runtime.stop()
            else:
                summary = runtime.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
        return [
            f"Worker summary: worker_id={runtime.worker_id} processed={summary.processed} "
            f"completed={summary.completed} failed={summary.failed} "
            f"idle_polls={summary.idle_polls}",
        ]

    def run_supervisor(self, command: SupervisorCommand) -> list[str]:
        settings = _settings(command.db_path)
        if command.workers is not None:
            settings.supervisor.num_workers = command.workers
        if command.auto_restart is not None:
            settings.supervisor.auto_restart = command.auto_restart
        settings.validate()
        with _components(settings) as components:
            if settings.proxy.use_proxy:
                components.proxy_pool.start_health_checks(
                    settings.proxy.health_check_interval_seconds,
                )
            supervisor = WorkerSupervisor(
                queue=components.queue,
                registry=components.registry,
                settings=settings.supervisor,
                db_path=settings.db_path,
            )
            supervisor.run()
            status = supervisor.status()
        return [
            f"Supervisor stopped: target_workers={status.target_workers} "
            f"live_workers={status.live_workers}",
        ]

    def add_proxy(self, command: ProxyCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _components(settings) as components:
            proxy = components.proxy_pool.add_proxy(command.proxy_url, probe=command.probe)
        return [f"Proxy: {proxy.proxy_url} status={proxy.status.value}"]

    def remove_proxy(self, command: ProxyCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _components(settings) as components:
            removed = components.proxy_pool.remove_proxy(command.proxy_url)
        if not removed:
            return [f"Proxy not found: {command.proxy_url}"]
        return [f"Proxy removed: {command.proxy_url}"]

    def list_proxies(self, db_path: Path | None) -> list[str]:
        settings = _settings(db_path)
        with _components(settings) as components:
            proxies = components.proxy_pool.list_proxies()
        lines = [f"Proxies: {len(proxies)}"]
        for proxy in proxies:
            avg_ms = proxy.avg_response_time_ms if proxy.avg_response_time_ms is not None else "-"
            lines.append(
                f"  {proxy.proxy_url} status={proxy.status.value} "
                f"success_rate={proxy.success_rate:.1f} avg_ms={avg_ms} "
                f"failures={proxy.consecutive_failures} probe_failures={proxy.probe_failures}",
            )
        return lines

    def check_proxies(self, db_path: Path | None) -> list[str]:
        settings = _settings(db_path)
        with _components(settings) as components:
            report = components.proxy_pool.perform_health_checks()
            stats = components.proxy_pool.stats()
        return [
            f"Proxy health check: checked={report.checked} healthy={report.healthy} "
            f"unhealthy={report.unhealthy}",
            f"Pool: total={stats.total} active={stats.active} failed={stats.failed} "
            f"testing={stats.testing}",
        ]

    def health(self, command: HealthCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _components(settings) as components:
            snapshot = collect_health(
                queue=components.queue,
                registry=components.registry,
                proxy_pool=components.proxy_pool,
            )
        if command.as_json:
            return [json.dumps(snapshot_to_dict(snapshot), indent=2, ensure_ascii=False)]
        return render_health_lines(snapshot)


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _components(settings: Settings) -> Iterator[FleetComponents]:
    components = open_components(settings)
    try:
        yield components
    finally:
        components.close()

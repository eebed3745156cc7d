"""Wiring of settings into store, queue, registry, proxy pool and workers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from crawl_fleet.config import Settings
from crawl_fleet.executors.base import ExecutorContext
from crawl_fleet.executors.registry import load_executors
from crawl_fleet.proxies.pool import ProxyPoolManager
from crawl_fleet.queue.job_queue import JobQueue
from crawl_fleet.queue.repository import JobStore
from crawl_fleet.runtime.registry import WorkerRegistry
from crawl_fleet.runtime.worker import WorkerRuntime

LOG_FORMAT = "%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    """Install one root handler; repeated calls only adjust the level."""

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)


@dataclass(slots=True)
class FleetComponents:
    """Store-backed services sharing one SQLite engine."""

    store: JobStore
    queue: JobQueue
    registry: WorkerRegistry
    proxy_pool: ProxyPoolManager

    def close(self) -> None:
        self.proxy_pool.stop_health_checks()
        self.store.close()


def open_components(settings: Settings, *, init_schema: bool = True) -> FleetComponents:
    store = JobStore(settings.db_path, sqlite_busy_timeout_ms=settings.queue.sqlite_busy_timeout_ms)
    if init_schema:
        store.init_schema()
    return FleetComponents(
        store=store,
        queue=JobQueue(store, job_timeout_seconds=settings.queue.job_timeout_seconds),
        registry=WorkerRegistry(store.engine),
        proxy_pool=ProxyPoolManager(
            store.engine,
            probe_url=settings.proxy.probe_url,
            probe_timeout_seconds=settings.proxy.probe_timeout_seconds,
        ),
    )


def new_worker_id(index: int | None = None) -> str:
    suffix = uuid4().hex[:8]
    return f"worker-{index}-{suffix}" if index is not None else f"worker-{suffix}"


def build_worker_runtime(
    settings: Settings,
    components: FleetComponents,
    *,
    worker_id: str | None = None,
) -> WorkerRuntime:
    context = ExecutorContext(
        request_policy=settings.request.to_policy(),
        proxy_pool=components.proxy_pool if settings.proxy.use_proxy else None,
        page_url_template=settings.executors.page_url_template,
    )
    return WorkerRuntime(
        queue=components.queue,
        registry=components.registry,
        executors=load_executors(settings.executors.specs, context),
        worker_id=worker_id or new_worker_id(),
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        heartbeat_interval_seconds=settings.worker.heartbeat_interval_seconds,
    )

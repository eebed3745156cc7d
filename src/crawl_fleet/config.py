"""Runtime configuration for the job queue, workers, supervisor and HTTP layer."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from crawl_fleet.http.request_executor import DEFAULT_USER_AGENT, RequestPolicy
from crawl_fleet.queue.models import DEFAULT_JOB_TIMEOUT_SECONDS, DEFAULT_MAX_RETRIES
from crawl_fleet.storage.common import DEFAULT_BUSY_TIMEOUT_MS

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class QueueSettings:
    """Job store and claim protocol settings."""

    sqlite_busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    job_timeout_seconds: int = DEFAULT_JOB_TIMEOUT_SECONDS
    job_max_retries: int = DEFAULT_MAX_RETRIES


@dataclass(slots=True)
class WorkerSettings:
    poll_interval_seconds: float = 5.0
    heartbeat_interval_seconds: float = 30.0


@dataclass(slots=True)
class SupervisorSettings:
    """Worker fleet size and health-check cadence."""

    num_workers: int = 3
    auto_restart: bool = True
    health_check_interval_seconds: float = 60.0
    worker_timeout_seconds: float = 120.0
    spawn_stagger_seconds: float = 1.0
    restart_delay_seconds: float = 5.0
    stop_grace_seconds: float = 10.0


@dataclass(slots=True)
class RequestSettings:
    """Outbound HTTP pacing and retry settings, per executor."""

    rate_limit_seconds: float = 2.0
    max_concurrent: int = 3
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    retry_backoff: float = 2.0
    timeout_seconds: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT

    def to_policy(self) -> RequestPolicy:
        return RequestPolicy(
            rate_limit_seconds=self.rate_limit_seconds,
            max_concurrent=self.max_concurrent,
            max_retries=self.max_retries,
            retry_delay_seconds=self.retry_delay_seconds,
            retry_backoff=self.retry_backoff,
            timeout_seconds=self.timeout_seconds,
            user_agent=self.user_agent,
        )


@dataclass(slots=True)
class ProxySettings:
    use_proxy: bool = False
    health_check_interval_seconds: float = 300.0
    probe_url: str = "https://httpbin.org/ip"
    probe_timeout_seconds: float = 10.0


@dataclass(slots=True)
class ExecutorSettings:
    """Which task executors workers run, as builtin names or ``module:attr`` specs."""

    specs: tuple[str, ...] = ("echo",)
    page_url_template: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".crawl_fleet.db")
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    request: RequestSettings = field(default_factory=RequestSettings)
    proxy: ProxySettings = field(default_factory=ProxySettings)
    executors: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``CRAWL_FLEET_*`` variables with local-friendly defaults."""

        return cls(
            db_path=db_path or Path(os.getenv("CRAWL_FLEET_DB_PATH", ".crawl_fleet.db")),
            log_level=os.getenv("CRAWL_FLEET_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                sqlite_busy_timeout_ms=int(
                    os.getenv("CRAWL_FLEET_SQLITE_BUSY_TIMEOUT_MS", str(DEFAULT_BUSY_TIMEOUT_MS)),
                ),
                job_timeout_seconds=int(
                    os.getenv(
                        "CRAWL_FLEET_JOB_TIMEOUT_SECONDS",
                        str(DEFAULT_JOB_TIMEOUT_SECONDS),
                    ),
                ),
                job_max_retries=int(
                    os.getenv("CRAWL_FLEET_JOB_MAX_RETRIES", str(DEFAULT_MAX_RETRIES)),
                ),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=float(os.getenv("CRAWL_FLEET_POLL_INTERVAL_SECONDS", "5")),
                heartbeat_interval_seconds=float(
                    os.getenv("CRAWL_FLEET_HEARTBEAT_INTERVAL_SECONDS", "30"),
                ),
            ),
            supervisor=SupervisorSettings(
                num_workers=int(os.getenv("CRAWL_FLEET_NUM_WORKERS", "3")),
                auto_restart=_env_bool("CRAWL_FLEET_AUTO_RESTART", default=True),
                health_check_interval_seconds=float(
                    os.getenv("CRAWL_FLEET_HEALTH_CHECK_INTERVAL_SECONDS", "60"),
                ),
                worker_timeout_seconds=float(
                    os.getenv("CRAWL_FLEET_WORKER_TIMEOUT_SECONDS", "120"),
                ),
            ),
            request=RequestSettings(
                rate_limit_seconds=float(os.getenv("CRAWL_FLEET_RATE_LIMIT_SECONDS", "2.0")),
                max_concurrent=int(os.getenv("CRAWL_FLEET_MAX_CONCURRENT", "3")),
                max_retries=int(os.getenv("CRAWL_FLEET_REQUEST_MAX_RETRIES", "3")),
                retry_delay_seconds=float(os.getenv("CRAWL_FLEET_RETRY_DELAY_SECONDS", "1.0")),
                retry_backoff=float(os.getenv("CRAWL_FLEET_RETRY_BACKOFF", "2.0")),
                timeout_seconds=float(os.getenv("CRAWL_FLEET_REQUEST_TIMEOUT_SECONDS", "30.0")),
            ),
            proxy=ProxySettings(
                use_proxy=_env_bool("CRAWL_FLEET_USE_PROXY", default=False),
                health_check_interval_seconds=float(
                    os.getenv("CRAWL_FLEET_PROXY_HEALTH_CHECK_INTERVAL_SECONDS", "300"),
                ),
                probe_url=os.getenv("CRAWL_FLEET_PROXY_PROBE_URL", "https://httpbin.org/ip"),
            ),
            executors=ExecutorSettings(
                specs=_collect_executor_specs(),
                page_url_template=os.getenv("CRAWL_FLEET_PAGE_URL_TEMPLATE") or None,
            ),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` naming the first offending variable."""

        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"CRAWL_FLEET_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if self.queue.sqlite_busy_timeout_ms < 0:
            raise ValueError("CRAWL_FLEET_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.queue.job_timeout_seconds <= 0:
            raise ValueError("CRAWL_FLEET_JOB_TIMEOUT_SECONDS must be > 0.")
        if self.queue.job_max_retries < 1:
            raise ValueError("CRAWL_FLEET_JOB_MAX_RETRIES must be >= 1.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("CRAWL_FLEET_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.heartbeat_interval_seconds <= 0:
            raise ValueError("CRAWL_FLEET_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.supervisor.num_workers < 1:
            raise ValueError("CRAWL_FLEET_NUM_WORKERS must be >= 1.")
        if self.supervisor.health_check_interval_seconds <= 0:
            raise ValueError("CRAWL_FLEET_HEALTH_CHECK_INTERVAL_SECONDS must be > 0.")
        if self.supervisor.worker_timeout_seconds <= self.worker.heartbeat_interval_seconds:
            raise ValueError(
                "CRAWL_FLEET_WORKER_TIMEOUT_SECONDS must exceed "
                "CRAWL_FLEET_HEARTBEAT_INTERVAL_SECONDS.",
            )
        if self.request.rate_limit_seconds < 0:
            raise ValueError("CRAWL_FLEET_RATE_LIMIT_SECONDS must be >= 0.")
        if self.request.max_concurrent < 1:
            raise ValueError("CRAWL_FLEET_MAX_CONCURRENT must be >= 1.")
        if self.request.max_retries < 1:
            raise ValueError("CRAWL_FLEET_REQUEST_MAX_RETRIES must be >= 1.")
        if self.request.retry_delay_seconds < 0:
            raise ValueError("CRAWL_FLEET_RETRY_DELAY_SECONDS must be >= 0.")
        if self.request.retry_backoff < 1:
            raise ValueError("CRAWL_FLEET_RETRY_BACKOFF must be >= 1.")
        if self.request.timeout_seconds <= 0:
            raise ValueError("CRAWL_FLEET_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.proxy.health_check_interval_seconds <= 0:
            raise ValueError("CRAWL_FLEET_PROXY_HEALTH_CHECK_INTERVAL_SECONDS must be > 0.")
        _validate_http_url(self.proxy.probe_url, name="CRAWL_FLEET_PROXY_PROBE_URL")
        if not self.executors.specs:
            raise ValueError("CRAWL_FLEET_EXECUTORS must name at least one executor.")
        if "page" in self.executors.specs:
            template = self.executors.page_url_template
            if not template or "{target}" not in template:
                raise ValueError(
                    "CRAWL_FLEET_PAGE_URL_TEMPLATE must contain '{target}' "
                    "when the page executor is enabled.",
                )
            _validate_http_url(
                template.replace("{target}", "x"),
                name="CRAWL_FLEET_PAGE_URL_TEMPLATE",
            )


def _collect_executor_specs() -> tuple[str, ...]:
    raw = os.getenv("CRAWL_FLEET_EXECUTORS", "echo")
    specs: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in specs:
            specs.append(token)
    return tuple(specs)


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

"""Domain models for the job queue, worker registry and proxy pool."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_MAX_RETRIES = 3
DEFAULT_JOB_TIMEOUT_SECONDS = 600


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class WorkerStatus(str, Enum):
    """Worker process states as seen through the registry."""

    IDLE = "idle"
    RUNNING = "running"
    CRASHED = "crashed"
    STOPPED = "stopped"


LIVE_WORKER_STATUSES = frozenset({WorkerStatus.IDLE, WorkerStatus.RUNNING})


class ProxyStatus(str, Enum):
    ACTIVE = "active"
    TESTING = "testing"
    FAILED = "failed"


class LogStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


class JobNotFoundError(RuntimeError):
    """Raised by operator actions addressing an unknown job."""


@dataclass(slots=True)
class JobCreate:
    """Input payload for submitting a job."""

    target: str
    job_id: str | None = None
    max_retries: int = DEFAULT_MAX_RETRIES


@dataclass(slots=True)
class ResultSummary:
    """Aggregate result of one job execution across sources."""

    items_found: int = 0
    sources: list[str] = field(default_factory=list)
    failed_sources: list[str] = field(default_factory=list)


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and worker logic."""

    job_id: str
    target: str
    status: JobStatus
    worker_id: str | None
    retry_count: int
    max_retries: int
    timeout_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    summary: ResultSummary
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobLogView:
    log_id: int
    job_id: str
    source: str
    message: str
    status: LogStatus
    item_count: int
    created_at: datetime


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream and per-source logs."""

    job: JobView
    events: list[JobEventView]
    logs: list[JobLogView]


@dataclass(slots=True)
class SourceMetricWrite:
    """Per-source metrics for one executor run."""

    source: str
    requests_count: int
    success_count: int
    error_count: int
    avg_response_time_ms: int | None
    items_found: int
    job_id: str | None = None


@dataclass(slots=True)
class SourceMetricView:
    source: str
    job_id: str | None
    requests_count: int
    success_count: int
    error_count: int
    avg_response_time_ms: int | None
    items_found: int
    created_at: datetime


@dataclass(slots=True)
class WorkerInstanceView:
    worker_id: str
    status: WorkerStatus
    pid: int | None
    last_heartbeat: datetime | None
    jobs_processed: int
    errors_count: int
    current_job_id: str | None
    started_at: datetime
    stopped_at: datetime | None


@dataclass(slots=True)
class ProxyView:
    proxy_url: str
    status: ProxyStatus
    success_rate: float
    avg_response_time_ms: int | None
    consecutive_failures: int
    probe_failures: int
    last_used: datetime | None
    last_health_check: datetime | None
    created_at: datetime


@dataclass(slots=True)
class QueueStats:
    """Job counts by status."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed

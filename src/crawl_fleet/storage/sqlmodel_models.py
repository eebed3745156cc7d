"""SQLModel ORM tables for the job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_queue", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    target: str = Field(index=True)
    status: str = Field(index=True)
    worker_id: str | None = Field(default=None, index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    timeout_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    items_found: int = Field(default=0)
    sources_json: str | None = Field(default=None, sa_column=Column(Text))
    failed_sources_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobLog(SQLModel, table=True):
    __tablename__ = "job_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_logs_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False),
    )
    source: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    item_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SourceMetric(SQLModel, table=True):
    __tablename__ = "source_metrics"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_source_metrics_source_time", "source", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str | None = Field(default=None, index=True)
    source: str
    requests_count: int = Field(default=0)
    success_count: int = Field(default=0)
    error_count: int = Field(default=0)
    avg_response_time_ms: int | None = None
    items_found: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CollectedItem(SQLModel, table=True):
    __tablename__ = "collected_items"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    source: str = Field(index=True)
    target: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkerInstance(SQLModel, table=True):
    __tablename__ = "worker_instances"  # type: ignore[bad-override]

    worker_id: str = Field(primary_key=True)
    status: str = Field(index=True)
    pid: int | None = None
    last_heartbeat: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    jobs_processed: int = Field(default=0)
    errors_count: int = Field(default=0)
    current_job_id: str | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    stopped_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Proxy(SQLModel, table=True):
    __tablename__ = "proxies"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    proxy_url: str = Field(unique=True, index=True)
    status: str = Field(index=True)
    success_rate: float = Field(default=0.0)
    avg_response_time_ms: int | None = None
    consecutive_failures: int = Field(default=0)
    probe_failures: int = Field(default=0)
    last_used: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_health_check: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from crawl_fleet.queue.models import (
    DEFAULT_JOB_TIMEOUT_SECONDS,
    TERMINAL_JOB_STATUSES,
    JobCreate,
    JobDetails,
    JobEventView,
    JobLogView,
    JobNotFoundError,
    JobStatus,
    JobView,
    LogStatus,
    QueueStats,
    ResultSummary,
    SourceMetricView,
    SourceMetricWrite,
)
from crawl_fleet.storage.alembic_runner import upgrade_head
from crawl_fleet.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from crawl_fleet.storage.sqlmodel_models import (
    CollectedItem,
    Job,
    JobEvent,
    JobLog,
    SourceMetric,
)

MAX_RETRIES_SUFFIX = "(max retries reached)"


class JobStore:
    """Job persistence facade.

    Every state transition is a conditional UPDATE guarded by the status the caller
    observed, so two processes racing on the same row cannot both win. Store errors
    propagate as ``SQLAlchemyError``; containing them is the queue's job.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_job(self, payload: JobCreate, *, now: datetime | None = None) -> JobView:
        """Create a pending job."""

        now = now or utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                target=payload.target,
                status=JobStatus.PENDING.value,
                retry_count=0,
                max_retries=payload.max_retries,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="submitted",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={"target": payload.target, "max_retries": payload.max_retries},
                now=now,
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next_job(
        self,
        *,
        worker_id: str,
        job_timeout: timedelta = timedelta(seconds=DEFAULT_JOB_TIMEOUT_SECONDS),
        now: datetime | None = None,
    ) -> JobView | None:
        """Atomically claim the oldest eligible pending job."""

        while True:
            claimed_at = now or utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Job)
                    .where(
                        Job.status == JobStatus.PENDING.value,
                        or_(
                            col(Job.worker_id).is_(None),
                            col(Job.worker_id) == "",
                            col(Job.worker_id) == worker_id,
                        ),
                    )
                    .order_by(col(Job.created_at).asc(), col(Job.job_id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.execute(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == candidate.job_id,
                        col(Job.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        worker_id=worker_id,
                        started_at=to_db_datetime(claimed_at),
                        timeout_at=to_db_datetime(claimed_at + job_timeout),
                        completed_at=None,
                        updated_at=to_db_datetime(claimed_at),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(Job)
                    .where(Job.job_id == candidate.job_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.PENDING,
                    status_to=JobStatus.RUNNING,
                    details={"worker_id": worker_id, "retry_count": claimed.retry_count},
                    now=claimed_at,
                )
                session.commit()
                return _to_job_view(claimed)

    def complete_job(
        self,
        *,
        job_id: str,
        summary: ResultSummary,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Mark a job completed; returns False when the job was not completable.

        With ``worker_id`` only the current owner of a running job may complete it,
        which keeps a worker whose job was reaped from overwriting a newer owner.
        A rejected completion of an existing job is recorded as ``complete_ignored``.
        """

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return False
            previous = JobStatus(row.status)
            if previous in TERMINAL_JOB_STATUSES:
                self._ignore_completion(
                    session=session,
                    job_id=job_id,
                    status=previous,
                    worker_id=worker_id,
                    reason="already terminal",
                    now=now,
                )
                return False

            conditions = [col(Job.job_id) == job_id, col(Job.status) == previous.value]
            if worker_id is not None:
                if previous != JobStatus.RUNNING or row.worker_id != worker_id:
                    self._ignore_completion(
                        session=session,
                        job_id=job_id,
                        status=previous,
                        worker_id=worker_id,
                        reason="not the current owner",
                        now=now,
                    )
                    return False
                conditions.append(col(Job.worker_id) == worker_id)

            result = session.execute(
                sa_update(Job)
                .where(*conditions)
                .values(
                    status=JobStatus.COMPLETED.value,
                    worker_id=None,
                    timeout_at=None,
                    completed_at=to_db_datetime(now),
                    items_found=summary.items_found,
                    sources_json=json.dumps(summary.sources, ensure_ascii=False),
                    failed_sources_json=json.dumps(summary.failed_sources, ensure_ascii=False),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                self._ignore_completion(
                    session=session,
                    job_id=job_id,
                    status=previous,
                    worker_id=worker_id,
                    reason="state changed concurrently",
                    now=now,
                )
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=previous,
                status_to=JobStatus.COMPLETED,
                details={
                    "worker_id": row.worker_id,
                    "items_found": summary.items_found,
                    "sources": summary.sources,
                    "failed_sources": summary.failed_sources,
                },
                now=now,
            )
            session.commit()
            return True

    def fail_job(
        self,
        *,
        job_id: str,
        error_message: str,
        expected_worker_id: str | None = None,
        expired_before: datetime | None = None,
        now: datetime | None = None,
    ) -> JobView | None:
        """Requeue or terminally fail a job; returns None when nothing changed.

        ``expected_worker_id`` restricts the failure to a running job still owned by
        that worker. ``expired_before`` restricts it to a running job whose deadline
        passed before that instant. Both are checked again inside the UPDATE, so a
        job that was requeued and claimed by someone else in the meantime is left alone.
        """

        while True:
            failed_at = now or utc_now()
            with Session(self.engine) as session:
                row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
                if row is None:
                    return None
                previous = JobStatus(row.status)
                if previous in TERMINAL_JOB_STATUSES:
                    return None

                conditions = [
                    col(Job.job_id) == job_id,
                    col(Job.status) == previous.value,
                    col(Job.retry_count) == row.retry_count,
                ]
                if expected_worker_id is not None:
                    if previous != JobStatus.RUNNING or row.worker_id != expected_worker_id:
                        return None
                    conditions.append(col(Job.worker_id) == expected_worker_id)
                if expired_before is not None:
                    deadline = optional_utc(row.timeout_at)
                    if previous != JobStatus.RUNNING or deadline is None:
                        return None
                    if deadline >= to_utc_aware_datetime(expired_before):
                        return None
                    conditions.append(col(Job.timeout_at) < to_db_datetime(expired_before))

                retry_count = row.retry_count + 1
                exhausted = retry_count >= row.max_retries
                if exhausted:
                    status_to = JobStatus.FAILED
                    values: dict[str, Any] = {
                        "status": status_to.value,
                        "retry_count": retry_count,
                        "worker_id": None,
                        "timeout_at": None,
                        "completed_at": to_db_datetime(failed_at),
                        "error_message": f"{error_message} {MAX_RETRIES_SUFFIX}",
                        "updated_at": to_db_datetime(failed_at),
                    }
                else:
                    status_to = JobStatus.PENDING
                    values = {
                        "status": status_to.value,
                        "retry_count": retry_count,
                        "worker_id": None,
                        "timeout_at": None,
                        "error_message": error_message,
                        "updated_at": to_db_datetime(failed_at),
                    }

                result = session.execute(sa_update(Job).where(*conditions).values(**values))
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="failed" if exhausted else "retry_scheduled",
                    status_from=previous,
                    status_to=status_to,
                    details={
                        "worker_id": row.worker_id,
                        "retry_count": retry_count,
                        "max_retries": row.max_retries,
                        "error_message": error_message,
                    },
                    now=failed_at,
                )
                session.commit()
                updated = session.exec(
                    select(Job)
                    .where(Job.job_id == job_id)
                    .execution_options(populate_existing=True),
                ).one()
                return _to_job_view(updated)

    def retry_job(self, *, job_id: str, now: datetime | None = None) -> JobView:
        """Manual operator retry for a terminally failed job."""

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if row.status != JobStatus.FAILED.value:
                raise RuntimeError(f"Only failed jobs can be retried manually, got {row.status}.")

            result = session.execute(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    retry_count=0,
                    worker_id=None,
                    timeout_at=None,
                    started_at=None,
                    completed_at=None,
                    error_message=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="manual_retry",
                status_from=JobStatus.FAILED,
                status_to=JobStatus.PENDING,
                details={},
                now=now,
            )
            session.commit()
            updated = session.exec(
                select(Job).where(Job.job_id == job_id).execution_options(populate_existing=True),
            ).one()
            return _to_job_view(updated)

    def list_timed_out_jobs(self, *, now: datetime | None = None) -> list[JobView]:
        """Running jobs whose deadline has passed."""

        now = now or utc_now()
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.RUNNING.value,
                    col(Job.timeout_at).is_not(None),
                    col(Job.timeout_at) < to_db_datetime(now),
                )
                .order_by(col(Job.timeout_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def count_jobs_by_status(self) -> QueueStats:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count(col(Job.job_id))).group_by(Job.status),
            ).all()
        stats = QueueStats()
        for status, count in rows:
            if status in {member.value for member in JobStatus}:
                setattr(stats, status, int(count))
        return stats

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream and logs."""

        with Session(self.engine) as session:
            job = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            log_rows = session.exec(
                select(JobLog)
                .where(JobLog.job_id == job_id)
                .order_by(col(JobLog.created_at).asc(), col(JobLog.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from else None,
                    status_to=JobStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        logs = [
            JobLogView(
                log_id=row.id or 0,
                job_id=row.job_id,
                source=row.source,
                message=row.message,
                status=LogStatus(row.status),
                item_count=row.item_count,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in log_rows
        ]
        return JobDetails(job=_to_job_view(job), events=events, logs=logs)

    def add_log(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        source: str,
        message: str,
        status: LogStatus,
        item_count: int = 0,
        now: datetime | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                JobLog(
                    job_id=job_id,
                    source=source,
                    message=message,
                    status=status.value,
                    item_count=item_count,
                    created_at=to_db_datetime(now or utc_now()),
                ),
            )
            session.commit()

    def add_metric(self, metric: SourceMetricWrite, *, now: datetime | None = None) -> None:
        with Session(self.engine) as session:
            session.add(
                SourceMetric(
                    job_id=metric.job_id,
                    source=metric.source,
                    requests_count=metric.requests_count,
                    success_count=metric.success_count,
                    error_count=metric.error_count,
                    avg_response_time_ms=metric.avg_response_time_ms,
                    items_found=metric.items_found,
                    created_at=to_db_datetime(now or utc_now()),
                ),
            )
            session.commit()

    def list_metrics(
        self,
        *,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[SourceMetricView]:
        """Most recent metric records, newest first."""

        with Session(self.engine) as session:
            statement = (
                select(SourceMetric)
                .order_by(col(SourceMetric.created_at).desc(), col(SourceMetric.id).desc())
                .limit(limit)
            )
            if since is not None:
                statement = statement.where(col(SourceMetric.created_at) >= to_db_datetime(since))
            rows = session.exec(statement).all()
        return [
            SourceMetricView(
                source=row.source,
                job_id=row.job_id,
                requests_count=row.requests_count,
                success_count=row.success_count,
                error_count=row.error_count,
                avg_response_time_ms=row.avg_response_time_ms,
                items_found=row.items_found,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def add_items(
        self,
        *,
        job_id: str,
        source: str,
        target: str,
        items: Sequence[dict[str, Any]],
        now: datetime | None = None,
    ) -> int:
        """Persist domain records returned by one executor run."""

        if not items:
            return 0
        created_at = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            for item in items:
                session.add(
                    CollectedItem(
                        job_id=job_id,
                        source=source,
                        target=target,
                        payload_json=json.dumps(
                            item,
                            ensure_ascii=False,
                            sort_keys=True,
                            default=str,
                        ),
                        created_at=created_at,
                    ),
                )
            session.commit()
        return len(items)

    def count_items(self, *, job_id: str) -> int:
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count(col(CollectedItem.id))).where(
                        CollectedItem.job_id == job_id,
                    ),
                ).one(),
            )

    def _ignore_completion(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        status: JobStatus,
        worker_id: str | None,
        reason: str,
        now: datetime,
    ) -> None:
        self._add_event(
            session=session,
            job_id=job_id,
            event_type="complete_ignored",
            status_from=status,
            status_to=status,
            details={"worker_id": worker_id, "reason": reason},
            now=now,
        )
        session.commit()

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
        now: datetime,
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(now),
            ),
        )


def _decode_list(value: str | None) -> list[str]:
    if not value:
        return []
    parsed = json.loads(value)
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        target=row.target,
        status=JobStatus(row.status),
        worker_id=row.worker_id or None,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        timeout_at=optional_utc(row.timeout_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        error_message=row.error_message,
        summary=ResultSummary(
            items_found=row.items_found,
            sources=_decode_list(row.sources_json),
            failed_sources=_decode_list(row.failed_sources_json),
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )

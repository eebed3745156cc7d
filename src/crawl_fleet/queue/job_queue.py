"""Claim / complete / fail / timeout protocol over the job store."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from crawl_fleet.queue.models import (
    DEFAULT_JOB_TIMEOUT_SECONDS,
    DEFAULT_MAX_RETRIES,
    JobCreate,
    JobStatus,
    JobView,
    LogStatus,
    QueueStats,
    ResultSummary,
    SourceMetricWrite,
)
from crawl_fleet.queue.repository import JobStore
from crawl_fleet.storage.common import utc_now

logger = logging.getLogger(__name__)

TIMED_OUT_MESSAGE = "timed out"


class JobQueue:
    """Serializes job ownership across worker processes.

    Store failures never escape claim/complete/fail/reap: they are logged and the
    caller sees "no job" or ``False``, and the next poll cycle tries again.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        job_timeout_seconds: int = DEFAULT_JOB_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.job_timeout = timedelta(seconds=job_timeout_seconds)
        self.clock = clock
        # Memo of jobs this process holds; the store's conditional updates decide ownership.
        self._in_flight: set[str] = set()

    def submit(self, target: str, *, max_retries: int = DEFAULT_MAX_RETRIES) -> JobView:
        """Create a pending job. Unlike the worker-facing calls, errors propagate."""

        if not target.strip():
            raise ValueError("Job target must be a non-empty string.")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1.")
        job = self.store.enqueue_job(
            JobCreate(target=target.strip(), max_retries=max_retries),
            now=self.clock(),
        )
        logger.info("Submitted job %s for target %r", job.job_id, job.target)
        return job

    def claim_next(self, worker_id: str) -> JobView | None:
        try:
            job = self.store.claim_next_job(
                worker_id=worker_id,
                job_timeout=self.job_timeout,
                now=self.clock(),
            )
        except SQLAlchemyError:
            logger.exception("Claim failed for worker %s; will retry next cycle", worker_id)
            return None
        if job is None:
            return None
        self._in_flight.add(job.job_id)
        logger.info(
            "Worker %s claimed job %s (target=%r attempt=%d/%d)",
            worker_id,
            job.job_id,
            job.target,
            job.retry_count + 1,
            job.max_retries,
        )
        return job

    def complete(
        self,
        job_id: str,
        summary: ResultSummary,
        *,
        worker_id: str | None = None,
    ) -> bool:
        self._in_flight.discard(job_id)
        try:
            completed = self.store.complete_job(
                job_id=job_id,
                summary=summary,
                worker_id=worker_id,
                now=self.clock(),
            )
        except SQLAlchemyError as error:
            logger.exception("Completing job %s failed", job_id)
            self.fail(job_id, f"Could not record completion: {error}", worker_id=worker_id)
            return False
        if not completed:
            logger.info("Ignoring completion of job %s: already terminal or reassigned", job_id)
            return False
        logger.info(
            "Job %s completed: %d items from %d sources",
            job_id,
            summary.items_found,
            len(summary.sources),
        )
        return True

    def fail(
        self,
        job_id: str,
        error_message: str,
        *,
        worker_id: str | None = None,
        expired_before: datetime | None = None,
    ) -> JobView | None:
        """Requeue or terminally fail a job.

        With ``worker_id`` only that worker's running claim is failed; with
        ``expired_before`` only a claim whose deadline passed before that instant.
        """

        self._in_flight.discard(job_id)
        try:
            job = self.store.fail_job(
                job_id=job_id,
                error_message=error_message,
                expected_worker_id=worker_id,
                expired_before=expired_before,
                now=self.clock(),
            )
        except SQLAlchemyError:
            logger.exception("Failing job %s failed", job_id)
            return None
        if job is None:
            logger.info("Ignoring failure of job %s: unknown, terminal or reassigned", job_id)
            return None
        if job.status == JobStatus.PENDING:
            logger.warning(
                "Job %s will be retried (%d/%d): %s",
                job_id,
                job.retry_count,
                job.max_retries,
                error_message,
            )
        else:
            logger.error(
                "Job %s failed after %d attempts: %s",
                job_id,
                job.retry_count,
                error_message,
            )
        return job

    def reap_timeouts(self) -> list[JobView]:
        """Route every running job past its deadline through ``fail``.

        Each failure is pinned to the owner and deadline seen by the scan, so a job
        another reaper already requeued and someone reclaimed is skipped.
        """

        now = self.clock()
        try:
            expired = self.store.list_timed_out_jobs(now=now)
        except SQLAlchemyError:
            logger.exception("Timeout scan failed")
            return []
        reaped: list[JobView] = []
        for job in expired:
            logger.warning("Job %s owned by %s timed out", job.job_id, job.worker_id)
            updated = self.fail(
                job.job_id,
                TIMED_OUT_MESSAGE,
                worker_id=job.worker_id,
                expired_before=now,
            )
            if updated is not None:
                reaped.append(updated)
        return reaped

    def retry(self, job_id: str) -> JobView:
        """Operator requeue of a terminally failed job."""

        job = self.store.retry_job(job_id=job_id, now=self.clock())
        logger.info("Job %s requeued manually", job_id)
        return job

    def add_log(
        self,
        job_id: str,
        source: str,
        message: str,
        status: LogStatus,
        item_count: int = 0,
    ) -> None:
        try:
            self.store.add_log(
                job_id=job_id,
                source=source,
                message=message,
                status=status,
                item_count=item_count,
                now=self.clock(),
            )
        except SQLAlchemyError:
            logger.exception("Could not write log entry for job %s", job_id)

    def record_metrics(self, metric: SourceMetricWrite) -> None:
        try:
            self.store.add_metric(metric, now=self.clock())
        except SQLAlchemyError:
            logger.exception("Could not record metrics for source %s", metric.source)

    def save_items(
        self,
        job_id: str,
        source: str,
        target: str,
        items: Sequence[dict[str, Any]],
    ) -> int:
        """Persist executor records. Store errors propagate to the caller."""

        return self.store.add_items(
            job_id=job_id,
            source=source,
            target=target,
            items=items,
            now=self.clock(),
        )

    def stats(self) -> QueueStats:
        return self.store.count_jobs_by_status()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

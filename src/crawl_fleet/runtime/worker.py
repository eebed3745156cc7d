"""Worker runtime: heartbeat, poll loop and per-job executor orchestration."""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from crawl_fleet.executors.base import TaskExecutor
from crawl_fleet.queue.job_queue import JobQueue
from crawl_fleet.queue.models import (
    JobView,
    LogStatus,
    ResultSummary,
    SourceMetricWrite,
    WorkerStatus,
)
from crawl_fleet.runtime.registry import WorkerRegistry

logger = logging.getLogger(__name__)

WORKER_LOG_SOURCE = "worker"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    idle_polls: int = 0


class WorkerRuntime:
    """Claims jobs one at a time and runs every configured executor against them.

    Two tickers share one stop event: the poll loop on the calling thread and
    the heartbeat on a daemon thread. SIGTERM/SIGINT only set the event, so a job
    that is already executing finishes before the loop exits.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        registry: WorkerRegistry,
        executors: Sequence[TaskExecutor],
        worker_id: str,
        poll_interval_seconds: float = 5.0,
        heartbeat_interval_seconds: float = 30.0,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.executors = list(executors)
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.jobs_processed = 0
        self.errors_count = 0
        self._stop_event = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None
        self._registered = False
        self._current_job_id: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def current_job_id(self) -> str | None:
        return self._current_job_id

    def start(self) -> None:
        """Register the worker row and start the heartbeat ticker."""

        if self._registered:
            return
        self.registry.register(worker_id=self.worker_id, pid=os.getpid())
        self._registered = True
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            name=f"heartbeat-{self.worker_id}",
            daemon=True,
        )
        self._heartbeat_thread.start()
        logger.info(
            "Worker %s started (pid=%d, executors=%s)",
            self.worker_id,
            os.getpid(),
            ", ".join(executor.source for executor in self.executors),
        )

    def stop(self) -> None:
        """Stop both tickers and mark the worker row stopped."""

        self._stop_event.set()
        thread = self._heartbeat_thread
        self._heartbeat_thread = None
        if thread is not None:
            thread.join(timeout=5)
        for executor in self.executors:
            close = getattr(executor, "close", None)
            if callable(close):
                close()
        if not self._registered:
            return
        self._registered = False
        try:
            self.registry.mark_stopped(worker_id=self.worker_id)
        except SQLAlchemyError:
            logger.exception("Could not mark worker %s stopped", self.worker_id)
        logger.info(
            "Worker %s stopped: jobs_processed=%d errors=%d",
            self.worker_id,
            self.jobs_processed,
            self.errors_count,
        )

    def request_stop(self) -> None:
        self._stop_event.set()

    def run_once(self) -> WorkerRunSummary:
        """Reap expired jobs, then claim and execute at most one job."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        self.queue.reap_timeouts()
        job = self.queue.claim_next(self.worker_id)
        if job is None:
            self._set_state(WorkerStatus.IDLE, current_job_id=None)
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.job_id
        self._set_state(WorkerStatus.RUNNING, current_job_id=job.job_id)
        try:
            if self.execute_job(job):
                summary.completed = 1
            else:
                summary.failed = 1
        finally:
            self.jobs_processed += 1
            self._current_job_id = None
            self._set_state(WorkerStatus.IDLE, current_job_id=None)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Poll until stopped.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls
                (None = keep polling, the mode supervised workers run in).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            self.start()
            try:
                while not self.stop_requested:
                    if max_jobs is not None and aggregate.processed >= max_jobs:
                        break

                    summary = self.run_once()
                    aggregate.processed += summary.processed
                    aggregate.completed += summary.completed
                    aggregate.failed += summary.failed
                    aggregate.idle_polls += summary.idle_polls

                    if summary.processed == 0:
                        consecutive_idle += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                        self._sleep_with_stop(self.poll_interval_seconds)
                        continue

                    consecutive_idle = 0
                    if max_jobs is None and self.poll_interval_seconds > 0:
                        self._sleep_with_stop(self.poll_interval_seconds)
            finally:
                self.stop()
        return aggregate

    def execute_job(self, job: JobView) -> bool:
        """Run every executor for ``job``; returns True when the job was completed.

        A failing executor is logged against its source and the job carries on.
        Only an error in the surrounding orchestration sends the job to ``fail``.
        """

        try:
            logger.info("Worker %s processing job %s (%s)", self.worker_id, job.job_id, job.target)
            self.queue.add_log(
                job.job_id,
                WORKER_LOG_SOURCE,
                f"Job assigned to worker {self.worker_id}",
                LogStatus.PROCESSING,
            )
            summary = ResultSummary()
            for executor in self.executors:
                self._run_executor(job, executor, summary)

            if summary.failed_sources and not summary.sources:
                logger.warning(
                    "Job %s: all %d sources failed; completing with no results",
                    job.job_id,
                    len(summary.failed_sources),
                )
            return self.queue.complete(job.job_id, summary, worker_id=self.worker_id)
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s failed in worker %s", job.job_id, self.worker_id)
            self.errors_count += 1
            self.queue.fail(
                job.job_id,
                str(error) or type(error).__name__,
                worker_id=self.worker_id,
            )
            return False

    def _run_executor(self, job: JobView, executor: TaskExecutor, summary: ResultSummary) -> None:
        source = executor.source
        try:
            self.queue.add_log(job.job_id, source, "Starting executor", LogStatus.PROCESSING)
            result = executor.execute(job.target)
            saved = self.queue.save_items(job.job_id, result.source, job.target, result.items)
            self.queue.record_metrics(
                SourceMetricWrite(
                    source=result.source,
                    requests_count=result.requests_made,
                    success_count=result.success_count,
                    error_count=len(result.errors),
                    avg_response_time_ms=result.avg_response_time_ms,
                    items_found=saved,
                    job_id=job.job_id,
                ),
            )
            self.queue.add_log(
                job.job_id,
                result.source,
                f"Completed: {saved} items found",
                LogStatus.SUCCESS,
                item_count=saved,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor %s failed for job %s", source, job.job_id)
            self.errors_count += 1
            summary.failed_sources.append(source)
            self.queue.add_log(job.job_id, source, f"Error: {error}", LogStatus.ERROR)
            self.queue.record_metrics(
                SourceMetricWrite(
                    source=source,
                    requests_count=0,
                    success_count=0,
                    error_count=1,
                    avg_response_time_ms=None,
                    items_found=0,
                    job_id=job.job_id,
                ),
            )
            return
        summary.items_found += saved
        summary.sources.append(result.source)

    def _heartbeat_loop(self) -> None:
        while not self._stop_event.wait(self.heartbeat_interval_seconds):
            self.send_heartbeat()

    def send_heartbeat(self) -> bool:
        try:
            return self.registry.heartbeat(
                worker_id=self.worker_id,
                jobs_processed=self.jobs_processed,
                errors_count=self.errors_count,
            )
        except SQLAlchemyError:
            logger.exception("Heartbeat failed for worker %s", self.worker_id)
            return False

    def _set_state(self, status: WorkerStatus, *, current_job_id: str | None) -> None:
        try:
            self.registry.set_state(
                worker_id=self.worker_id,
                status=status,
                current_job_id=current_job_id,
            )
        except SQLAlchemyError:
            logger.exception("Could not update state of worker %s", self.worker_id)

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        if not self._stop_event.is_set():
            logger.info(
                "Worker %s received %s; finishing current cycle (job=%s)",
                self.worker_id,
                signal_name,
                self._current_job_id or "-",
            )
        self._stop_event.set()

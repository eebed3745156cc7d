"""Worker instance registry: registration, heartbeats and liveness queries."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from crawl_fleet.queue.models import LIVE_WORKER_STATUSES, WorkerInstanceView, WorkerStatus
from crawl_fleet.storage.common import optional_utc, to_db_datetime, to_utc_aware_datetime, utc_now
from crawl_fleet.storage.sqlmodel_models import WorkerInstance

_LIVE_VALUES = tuple(status.value for status in LIVE_WORKER_STATUSES)


class WorkerRegistry:
    """Reads and writes ``worker_instances`` rows.

    A worker's health is its heartbeat timestamp, nothing else, so a restarted
    supervisor sees the same picture as the one that spawned the workers.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def register(self, *, worker_id: str, pid: int | None, now: datetime | None = None) -> None:
        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.get(WorkerInstance, worker_id)
            if row is None:
                row = WorkerInstance(
                    worker_id=worker_id,
                    status=WorkerStatus.IDLE.value,
                    started_at=to_db_datetime(now),
                )
            row.status = WorkerStatus.IDLE.value
            row.pid = pid
            row.last_heartbeat = to_db_datetime(now)
            row.jobs_processed = 0
            row.errors_count = 0
            row.current_job_id = None
            row.started_at = to_db_datetime(now)
            row.stopped_at = None
            session.add(row)
            session.commit()

    def heartbeat(
        self,
        *,
        worker_id: str,
        jobs_processed: int,
        errors_count: int,
        now: datetime | None = None,
    ) -> bool:
        now = now or utc_now()
        with Session(self.engine) as session:
            result = session.execute(
                sa_update(WorkerInstance)
                .where(col(WorkerInstance.worker_id) == worker_id)
                .values(
                    last_heartbeat=to_db_datetime(now),
                    jobs_processed=jobs_processed,
                    errors_count=errors_count,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def set_state(
        self,
        *,
        worker_id: str,
        status: WorkerStatus,
        current_job_id: str | None,
    ) -> bool:
        """Move a live worker between idle and running; crashed or stopped rows stay put."""

        with Session(self.engine) as session:
            result = session.execute(
                sa_update(WorkerInstance)
                .where(
                    col(WorkerInstance.worker_id) == worker_id,
                    col(WorkerInstance.status).in_(_LIVE_VALUES),
                )
                .values(status=status.value, current_job_id=current_job_id),
            )
            session.commit()
            return result.rowcount == 1

    def mark_stopped(self, *, worker_id: str, now: datetime | None = None) -> None:
        now = now or utc_now()
        with Session(self.engine) as session:
            session.execute(
                sa_update(WorkerInstance)
                .where(col(WorkerInstance.worker_id) == worker_id)
                .values(
                    status=WorkerStatus.STOPPED.value,
                    current_job_id=None,
                    stopped_at=to_db_datetime(now),
                ),
            )
            session.commit()

    def stop_all_live(self, *, now: datetime | None = None) -> int:
        """Mark every idle/running row stopped; used when a supervisor starts fresh."""

        now = now or utc_now()
        with Session(self.engine) as session:
            result = session.execute(
                sa_update(WorkerInstance)
                .where(col(WorkerInstance.status).in_(_LIVE_VALUES))
                .values(status=WorkerStatus.STOPPED.value, stopped_at=to_db_datetime(now)),
            )
            session.commit()
            return result.rowcount

    def list_stale(self, *, heartbeat_before: datetime) -> list[WorkerInstanceView]:
        """Live workers whose last heartbeat is older than the threshold."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkerInstance).where(
                    col(WorkerInstance.status).in_(_LIVE_VALUES),
                    col(WorkerInstance.last_heartbeat) < to_db_datetime(heartbeat_before),
                ),
            ).all()
        return [_to_worker_view(row) for row in rows]

    def mark_crashed(
        self,
        *,
        worker_id: str,
        heartbeat_before: datetime,
        now: datetime | None = None,
    ) -> bool:
        """Mark crashed only if the row is still live and still stale."""

        now = now or utc_now()
        with Session(self.engine) as session:
            result = session.execute(
                sa_update(WorkerInstance)
                .where(
                    col(WorkerInstance.worker_id) == worker_id,
                    col(WorkerInstance.status).in_(_LIVE_VALUES),
                    col(WorkerInstance.last_heartbeat) < to_db_datetime(heartbeat_before),
                )
                .values(status=WorkerStatus.CRASHED.value, stopped_at=to_db_datetime(now)),
            )
            session.commit()
            return result.rowcount == 1

    def get(self, worker_id: str) -> WorkerInstanceView | None:
        with Session(self.engine) as session:
            row = session.get(WorkerInstance, worker_id)
        return _to_worker_view(row) if row is not None else None

    def list_workers(self, *, limit: int = 20) -> list[WorkerInstanceView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkerInstance)
                .order_by(col(WorkerInstance.started_at).desc())
                .limit(limit),
            ).all()
        return [_to_worker_view(row) for row in rows]


def _to_worker_view(row: WorkerInstance) -> WorkerInstanceView:
    return WorkerInstanceView(
        worker_id=row.worker_id,
        status=WorkerStatus(row.status),
        pid=row.pid,
        last_heartbeat=optional_utc(row.last_heartbeat),
        jobs_processed=row.jobs_processed,
        errors_count=row.errors_count,
        current_job_id=row.current_job_id,
        started_at=to_utc_aware_datetime(row.started_at),
        stopped_at=optional_utc(row.stopped_at),
    )

"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from crawl_fleet.queue.job_queue import JobQueue
from crawl_fleet.queue.repository import JobStore
from crawl_fleet.runtime.registry import WorkerRegistry


class FakeClock:
    """Settable UTC clock for code that takes a ``clock`` callable."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer CRAWL_FLEET_* variables out of the tests."""

    for name in list(os.environ):
        if name.startswith("CRAWL_FLEET_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "fleet.db"


@pytest.fixture()
def store(db_path: Path) -> Iterator[JobStore]:
    job_store = JobStore(db_path)
    job_store.init_schema()
    try:
        yield job_store
    finally:
        job_store.close()


@pytest.fixture()
def job_queue(store: JobStore, clock: FakeClock) -> JobQueue:
    return JobQueue(store, clock=clock)


@pytest.fixture()
def registry(store: JobStore) -> WorkerRegistry:
    return WorkerRegistry(store.engine)

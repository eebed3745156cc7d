"""Worker process supervisor: spawn, health-check and restart worker processes."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from crawl_fleet.config import SupervisorSettings
from crawl_fleet.queue.job_queue import JobQueue
from crawl_fleet.runtime.bootstrap import new_worker_id
from crawl_fleet.runtime.registry import WorkerRegistry
from crawl_fleet.storage.common import utc_now

logger = logging.getLogger(__name__)

WORKER_MODULE = "crawl_fleet.runtime.worker_main"
LOOP_TICK_SECONDS = 0.5

PopenFactory = Callable[..., Any]


@dataclass(slots=True)
class WorkerSlot:
    index: int
    worker_id: str
    process: Any
    spawned_at: datetime


@dataclass(slots=True)
class SupervisorStatus:
    running: bool
    target_workers: int
    live_workers: int
    worker_ids: list[str] = field(default_factory=list)
    pending_restarts: list[int] = field(default_factory=list)


class WorkerSupervisor:
    """Keeps ``num_workers`` worker processes alive.

    Liveness comes from two places: process exit codes observed here, and
    heartbeats in the worker registry, which also catch hung processes. Jobs held
    by dead workers are never touched directly; ``reap_timeouts`` returns them to
    the queue once their deadline passes.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        registry: WorkerRegistry,
        settings: SupervisorSettings | None = None,
        db_path: Path | None = None,
        popen: PopenFactory = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utc_now,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.settings = settings or SupervisorSettings()
        self.db_path = db_path
        self._popen = popen
        self._sleep = sleep
        self._monotonic = monotonic
        self._clock = clock
        self._env = dict(env) if env is not None else None
        self._slots: dict[int, WorkerSlot] = {}
        self._pending_restarts: dict[int, float] = {}
        self._running = False
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return self._running

    def worker_command(self, worker_id: str) -> list[str]:
        return [sys.executable, "-m", WORKER_MODULE, "--worker-id", worker_id]

    def start(self) -> None:
        """Retire rows left by a previous run, then spawn the fleet with a stagger."""

        if self._running:
            logger.warning("Supervisor already running")
            return
        self._running = True
        self._stop_event.clear()
        try:
            retired = self.registry.stop_all_live(now=self._clock())
        except SQLAlchemyError:
            logger.exception("Could not clean up worker rows from a previous run")
        else:
            if retired:
                logger.info("Marked %d stale worker rows from a previous run stopped", retired)

        count = self.settings.num_workers
        logger.info("Starting %d workers", count)
        for index in range(count):
            self.spawn_worker(index)
            if index < count - 1 and self.settings.spawn_stagger_seconds > 0:
                self._sleep(self.settings.spawn_stagger_seconds)

    def spawn_worker(self, index: int) -> WorkerSlot:
        worker_id = new_worker_id(index)
        process = self._popen(self.worker_command(worker_id), env=self._worker_env())
        slot = WorkerSlot(
            index=index,
            worker_id=worker_id,
            process=process,
            spawned_at=self._clock(),
        )
        self._slots[index] = slot
        self._pending_restarts.pop(index, None)
        logger.info("Spawned worker %s (slot=%d pid=%s)", worker_id, index, process.pid)
        return slot

    def poll_processes(self) -> list[WorkerSlot]:
        """Collect exited processes and schedule restarts; returns the exited slots."""

        exited: list[WorkerSlot] = []
        for index, slot in list(self._slots.items()):
            exit_code = slot.process.poll()
            if exit_code is None:
                continue
            del self._slots[index]
            exited.append(slot)
            if not self._running:
                continue
            logger.warning(
                "Worker %s (slot=%d) exited with code %s",
                slot.worker_id,
                index,
                exit_code,
            )
            self._schedule_restart(index, delay=self.settings.restart_delay_seconds)
        return exited

    def spawn_due_restarts(self) -> list[WorkerSlot]:
        if not self._running:
            return []
        now = self._monotonic()
        spawned: list[WorkerSlot] = []
        for index, due in sorted(self._pending_restarts.items()):
            if due <= now and index not in self._slots:
                logger.info("Restarting worker slot %d", index)
                spawned.append(self.spawn_worker(index))
        return spawned

    def perform_health_checks(self) -> list[str]:
        """Mark stale workers crashed, reap expired jobs and refill missing slots.

        Returns the ids of workers marked crashed in this pass.
        """

        now = self._clock()
        threshold = now - timedelta(seconds=self.settings.worker_timeout_seconds)
        crashed: list[str] = []
        try:
            stale = self.registry.list_stale(heartbeat_before=threshold)
        except SQLAlchemyError:
            logger.exception("Health check could not read worker registry")
            stale = []

        for worker in stale:
            try:
                marked = self.registry.mark_crashed(
                    worker_id=worker.worker_id,
                    heartbeat_before=threshold,
                    now=now,
                )
            except SQLAlchemyError:
                logger.exception("Could not mark worker %s crashed", worker.worker_id)
                continue
            if not marked:
                continue
            crashed.append(worker.worker_id)
            logger.warning(
                "Worker %s missed heartbeats since %s; marked crashed",
                worker.worker_id,
                worker.last_heartbeat.isoformat() if worker.last_heartbeat else "never",
            )
            self._retire_hung_process(worker.worker_id)

        reaped = self.queue.reap_timeouts()
        if reaped:
            logger.info("Health check returned %d timed-out jobs to the queue", len(reaped))

        if self._running:
            for index in range(self.settings.num_workers):
                if index not in self._slots and index not in self._pending_restarts:
                    logger.info("Worker slot %d is empty; spawning replacement", index)
                    self.spawn_worker(index)
        return crashed

    def run(self, *, max_cycles: int | None = None) -> None:
        """Supervise until SIGTERM/SIGINT (or ``max_cycles`` loop ticks), then stop."""

        with self._signal_handlers():
            self.start()
            next_health_check = self._monotonic() + self.settings.health_check_interval_seconds
            cycles = 0
            try:
                while not self._stop_event.is_set():
                    self.poll_processes()
                    self.spawn_due_restarts()
                    if self._monotonic() >= next_health_check:
                        self.perform_health_checks()
                        next_health_check = (
                            self._monotonic() + self.settings.health_check_interval_seconds
                        )
                    cycles += 1
                    if max_cycles is not None and cycles >= max_cycles:
                        break
                    self._stop_event.wait(LOOP_TICK_SECONDS)
            finally:
                self.stop()

    def stop(self) -> None:
        """SIGTERM every live worker, SIGKILL whatever outlives the grace period."""

        self._running = False
        self._stop_event.set()
        self._pending_restarts.clear()
        slots = list(self._slots.values())
        self._slots.clear()
        if not slots:
            return
        logger.info("Stopping %d workers", len(slots))
        for slot in slots:
            try:
                slot.process.terminate()
            except OSError:
                continue
        deadline = self._monotonic() + self.settings.stop_grace_seconds
        for slot in slots:
            remaining = max(0.0, deadline - self._monotonic())
            try:
                slot.process.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                logger.warning("Worker %s ignored SIGTERM; killing", slot.worker_id)
                _kill_process(slot.process)
        logger.info("All workers stopped")

    def status(self) -> SupervisorStatus:
        return SupervisorStatus(
            running=self._running,
            target_workers=self.settings.num_workers,
            live_workers=len(self._slots),
            worker_ids=[slot.worker_id for _, slot in sorted(self._slots.items())],
            pending_restarts=sorted(self._pending_restarts),
        )

    def _retire_hung_process(self, worker_id: str) -> None:
        for index, slot in list(self._slots.items()):
            if slot.worker_id != worker_id:
                continue
            if slot.process.poll() is None:
                logger.warning("Terminating hung worker %s (pid=%s)", worker_id, slot.process.pid)
                _terminate_process(slot.process, grace_seconds=self.settings.stop_grace_seconds)
            del self._slots[index]
            if self._running and self.settings.auto_restart:
                self._schedule_restart(index, delay=0.0)
            return

    def _schedule_restart(self, index: int, *, delay: float) -> None:
        if not self.settings.auto_restart:
            logger.info("Auto-restart disabled; slot %d stays empty", index)
            return
        self._pending_restarts[index] = self._monotonic() + delay
        logger.info("Scheduled restart of slot %d in %.1fs", index, delay)

    def _worker_env(self) -> dict[str, str]:
        env = dict(self._env) if self._env is not None else dict(os.environ)
        if self.db_path is not None:
            env["CRAWL_FLEET_DB_PATH"] = str(self.db_path)
        level = logging.getLogger().getEffectiveLevel()
        env["CRAWL_FLEET_LOG_LEVEL"] = logging.getLevelName(level)
        return env

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Supervisor received %s; shutting down", signal.Signals(signum).name)
            self._stop_event.set()

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


def _terminate_process(process: Any, *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        _kill_process(process)


def _kill_process(process: Any) -> None:
    try:
        process.kill()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        logger.error("Worker process %s did not exit after SIGKILL", process.pid)

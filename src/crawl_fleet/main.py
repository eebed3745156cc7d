"""CLI entrypoint for crawl-fleet."""

import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click
from sqlalchemy.exc import SQLAlchemyError

from crawl_fleet import __version__
from crawl_fleet.config import LOG_LEVELS
from crawl_fleet.controllers import (
    FleetCliController,
    HealthCommand,
    JobCommand,
    ListJobsCommand,
    ProxyCommand,
    SubmitJobCommand,
    SupervisorCommand,
    WorkerCommand,
)
from crawl_fleet.executors.registry import ExecutorLoadError
from crawl_fleet.queue.models import JobStatus
from crawl_fleet.runtime.bootstrap import configure_logging

click.rich_click.USE_MARKDOWN = True
CONTROLLER = FleetCliController()
DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to CRAWL_FLEET_DB_PATH).",
)

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="crawl-fleet")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Log level (defaults to CRAWL_FLEET_LOG_LEVEL or INFO).",
)
def crawl_fleet(log_level: str | None) -> None:
    """Crawl fleet CLI: job queue, workers, supervisor and proxy pool."""

    level = (log_level or os.getenv("CRAWL_FLEET_LOG_LEVEL") or "INFO").upper()
    if level not in LOG_LEVELS:
        raise click.UsageError(f"CRAWL_FLEET_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}.")
    configure_logging(level)


@crawl_fleet.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("submit")
@DB_PATH_OPTION
@click.option(
    "--target",
    "targets",
    multiple=True,
    required=True,
    help="Target to collect for, for example a city name. Can be repeated.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts before the job fails for good (defaults to CRAWL_FLEET_JOB_MAX_RETRIES).",
)
def jobs_submit(db_path: Path | None, targets: tuple[str, ...], max_retries: int | None) -> None:
    """Submit one pending job per target."""

    _emit_lines(
        _run(
            CONTROLLER.submit,
            SubmitJobCommand(db_path=db_path, targets=targets, max_retries=max_retries),
        ),
    )


@jobs.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only show jobs in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs with queue counts."""

    command = ListJobsCommand(db_path=db_path, status=status, limit=limit)
    _emit_lines(_run(CONTROLLER.list_jobs, command))


@jobs.command("inspect")
@DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id to inspect.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show a job with its event trail and per-source logs."""

    _emit_lines(_run(CONTROLLER.inspect_job, JobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("retry")
@DB_PATH_OPTION
@click.option("--job-id", required=True, help="Failed job id to requeue.")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Requeue a failed job with a fresh retry budget."""

    _emit_lines(_run(CONTROLLER.retry_job, JobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("reap")
@DB_PATH_OPTION
def jobs_reap(db_path: Path | None) -> None:
    """Return running jobs past their deadline to the queue."""

    _emit_lines(_run(CONTROLLER.reap, db_path))


@crawl_fleet.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@DB_PATH_OPTION
@click.option("--worker-id", default=None, help="Worker id (generated when omitted).")
@click.option("--once", is_flag=True, default=False, help="Poll the queue a single time.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Stop after this many consecutive empty polls.",
)
@click.option(
    "--forever",
    is_flag=True,
    default=False,
    help="Keep polling an empty queue until SIGTERM/SIGINT.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    worker_id: str | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    forever: bool,
) -> None:
    """Run a worker in this process."""

    _emit_lines(
        _run(
            CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                worker_id=worker_id,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=None if forever else max_idle_polls,
            ),
        ),
    )


@crawl_fleet.group()
def supervisor() -> None:
    """Worker supervisor commands."""


@supervisor.command("start")
@DB_PATH_OPTION
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=None,
    help="Number of worker processes (defaults to CRAWL_FLEET_NUM_WORKERS).",
)
@click.option(
    "--auto-restart/--no-auto-restart",
    default=None,
    help="Respawn workers that exit or stop heartbeating.",
)
def supervisor_start(db_path: Path | None, workers: int | None, auto_restart: bool | None) -> None:
    """Spawn and supervise worker processes until SIGTERM/SIGINT."""

    _emit_lines(
        _run(
            CONTROLLER.run_supervisor,
            SupervisorCommand(db_path=db_path, workers=workers, auto_restart=auto_restart),
        ),
    )


@crawl_fleet.group()
def proxies() -> None:
    """Proxy pool commands."""


@proxies.command("add")
@DB_PATH_OPTION
@click.option("--url", "proxy_url", required=True, help="Proxy URL, e.g. http://host:8080.")
@click.option("--no-probe", is_flag=True, default=False, help="Skip the initial health probe.")
def proxies_add(db_path: Path | None, proxy_url: str, no_probe: bool) -> None:
    """Add a proxy to the pool."""

    _emit_lines(
        _run(
            CONTROLLER.add_proxy,
            ProxyCommand(db_path=db_path, proxy_url=proxy_url, probe=not no_probe),
        ),
    )


@proxies.command("remove")
@DB_PATH_OPTION
@click.option("--url", "proxy_url", required=True, help="Proxy URL to remove.")
def proxies_remove(db_path: Path | None, proxy_url: str) -> None:
    """Remove a proxy from the pool."""

    _emit_lines(_run(CONTROLLER.remove_proxy, ProxyCommand(db_path=db_path, proxy_url=proxy_url)))


@proxies.command("list")
@DB_PATH_OPTION
def proxies_list(db_path: Path | None) -> None:
    """List proxies with their health counters."""

    _emit_lines(_run(CONTROLLER.list_proxies, db_path))


@proxies.command("check")
@DB_PATH_OPTION
def proxies_check(db_path: Path | None) -> None:
    """Probe every proxy once."""

    _emit_lines(_run(CONTROLLER.check_proxies, db_path))


@crawl_fleet.command("health")
@DB_PATH_OPTION
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON.")
def health(db_path: Path | None, as_json: bool) -> None:
    """Show worker, source, proxy and job health."""

    _emit_lines(_run(CONTROLLER.health, HealthCommand(db_path=db_path, as_json=as_json)))


def _run(action: Callable[[T], list[str]], command: T) -> list[str]:
    try:
        return action(command)
    except (ValueError, ExecutorLoadError) as error:
        raise click.UsageError(str(error)) from error
    except SQLAlchemyError as error:
        raise click.ClickException(f"Job store error: {error}") from error
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    crawl_fleet()

"""Entry point for supervised worker processes.

The supervisor runs ``python -m crawl_fleet.runtime.worker_main --worker-id ID``;
everything else comes from ``CRAWL_FLEET_*`` environment variables.
"""

from __future__ import annotations

import logging

import rich_click as click

from crawl_fleet.config import Settings
from crawl_fleet.runtime.bootstrap import build_worker_runtime, configure_logging, open_components

logger = logging.getLogger(__name__)


@click.command(name="crawl-fleet-worker")
@click.option("--worker-id", required=True, help="Registry id of this worker process.")
def main(worker_id: str) -> None:
    """Run one worker until SIGTERM/SIGINT."""

    settings = Settings.from_env()
    try:
        settings.validate()
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    configure_logging(settings.log_level)

    components = open_components(settings, init_schema=False)
    try:
        runtime = build_worker_runtime(settings, components, worker_id=worker_id)
        summary = runtime.run_loop()
        logger.info(
            "Worker %s exiting: processed=%d completed=%d failed=%d",
            worker_id,
            summary.processed,
            summary.completed,
            summary.failed,
        )
    finally:
        components.close()


if __name__ == "__main__":
    main()

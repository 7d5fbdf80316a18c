"""
Pipeline Scheduler - Cron and On-Demand Execution

Manages scheduled and manual pipeline runs using APScheduler.

Features:
- Cron-based scheduling (configurable via PIPELINE_SCHEDULE_CRON)
- RUN_ONCE mode for immediate execution
- Graceful shutdown handling

Usage:
    # Scheduled mode (default)
    python -m apps.pipeline

    # Run once and exit
    RUN_ONCE=true python -m apps.pipeline
"""

import asyncio
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from apps.pipeline.factory import open_runner
from utils.config import settings
from utils.logging import setup_logging
from utils.schemas import RunReport

logger = logging.getLogger(__name__)

RunJob = Callable[[dict[str, Any]], Awaitable[RunReport]]


async def run_pipeline(options: dict[str, Any]) -> RunReport:
    """Run the pipeline once with freshly built clients."""
    async with open_runner(settings) as runner:
        return await runner.run(options)


class PipelineScheduler:
    """
    Scheduler for periodic or on-demand pipeline runs.

    Handles:
    - APScheduler setup and management
    - RUN_ONCE immediate execution
    - Signal handling for graceful shutdown
    """

    def __init__(
        self,
        run_once: bool = False,
        job: Optional[RunJob] = None,
        cron: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize scheduler.

        Args:
            run_once: If True, run the pipeline once and exit
            job: Coroutine executing one run (defaults to run_pipeline)
            cron: Crontab expression (defaults to PIPELINE_SCHEDULE_CRON)
            options: Run parameters passed to every run
        """
        self.run_once = run_once
        self.job = job or run_pipeline
        self.cron = cron or settings.PIPELINE_SCHEDULE_CRON
        self.options = options or {}
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.shutdown_event = asyncio.Event()
        self.last_report: Optional[RunReport] = None

        logger.info(
            "PipelineScheduler initialized",
            extra={"run_once": run_once, "cron_schedule": self.cron},
        )

    async def execute_pipeline(self) -> None:
        """Execute one pipeline run, logging its outcome."""
        logger.info("Starting pipeline execution")

        try:
            self.last_report = await self.job(dict(self.options))
            logger.info(
                "Pipeline execution completed successfully",
                extra={"duration": self.last_report.timing.human},
            )

        except Exception as e:
            logger.error("Pipeline execution failed", extra={"error": str(e)}, exc_info=True)
            raise

        finally:
            if self.run_once:
                logger.info("RUN_ONCE mode: signaling shutdown")
                self.shutdown_event.set()

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def start(self) -> None:
        """
        Start scheduler or execute once.

        In scheduled mode, runs continuously until shutdown signal.
        In RUN_ONCE mode, executes immediately and exits.
        """
        self.setup_signal_handlers()

        if self.run_once:
            logger.info("Running in RUN_ONCE mode")
            await self.execute_pipeline()
            return

        logger.info("Running in scheduled mode")

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.execute_pipeline,
            trigger=CronTrigger.from_crontab(self.cron),
            id="pipeline_job",
            name="Slack to Mixpanel pipeline",
            replace_existing=True,
            max_instances=1,
        )

        # Start scheduler first to get next_run_time
        self.scheduler.start()

        job = self.scheduler.get_job("pipeline_job")
        next_run = getattr(job, "next_run_time", None)
        logger.info(
            "Scheduled pipeline job",
            extra={"schedule": self.cron, "next_run": str(next_run) if next_run is not None else None},
        )
        logger.info("Waiting for jobs...")

        await self.shutdown_event.wait()

        logger.info("Shutting down scheduler")
        self.scheduler.shutdown(wait=True)
        logger.info("Scheduler shutdown complete")


async def main() -> None:
    """Main entry point for scheduler."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    scheduler = PipelineScheduler(run_once=run_once)

    try:
        await scheduler.start()
    except Exception as e:
        logger.error("Scheduler failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


def cli() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()

"""
Ingestion Scheduler - Cron and On-Demand Execution

Manages scheduled and manual ingestion runs using APScheduler.

Features:
- Cron-based scheduling (configurable via EXTRACT_SCHEDULE_CRON)
- RUN_ONCE mode for immediate execution
- SIGINT/SIGTERM interrupt a running ingestion, which saves what it has
  collected before the process exits

Usage:
    # Scheduled mode (default)
    python -m apps.ingestor

    # Run once and exit
    RUN_ONCE=true python -m apps.ingestor
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from apps.ingestor.pipeline import IngestionPipeline
from utils.config import Settings, get_settings
from utils.errors import ConfigurationError
from utils.logging import setup_logging
from utils.schemas import RunResult

logger = logging.getLogger(__name__)


class IngestionScheduler:
    """
    Scheduler for periodic or on-demand ingestion runs.

    Handles:
    - APScheduler setup and management
    - Cron-based scheduling
    - RUN_ONCE immediate execution
    - Signal handling: interrupt the active run, then shut down
    """

    def __init__(self, settings: Settings, run_once: bool = False) -> None:
        """
        Initialize scheduler.

        Args:
            settings: Resolved application settings
            run_once: If True, run ingestion once and exit
        """
        self.settings = settings
        self.run_once = run_once
        self.scheduler: AsyncIOScheduler | None = None
        self.shutdown_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._pipeline: Optional[IngestionPipeline] = None

        logger.info(
            "IngestionScheduler initialized",
            extra={
                "run_once": run_once,
                "cron_schedule": settings.EXTRACT_SCHEDULE_CRON,
                "model_provider": settings.MODEL_PROVIDER,
            },
        )

    async def execute_ingestion(self) -> RunResult:
        """
        Build a fresh pipeline and run it to completion or interruption.

        Raises:
            ConfigurationError: If the model API key is missing
        """
        logger.info("Starting ingestion run")
        self._idle.clear()

        try:
            pipeline = IngestionPipeline.from_settings(self.settings)
            self._pipeline = pipeline
            try:
                result = await pipeline.run()
            finally:
                self._pipeline = None
                await pipeline.aclose()

            logger.info(
                "Ingestion run completed",
                extra={**result.counts(), "stop_reason": result.stop_reason},
            )

            if result.interrupted:
                self.shutdown_event.set()
            return result

        except Exception as e:
            logger.error("Ingestion run failed", extra={"error": str(e)}, exc_info=True)
            raise

        finally:
            self._idle.set()
            if self.run_once:
                logger.info("RUN_ONCE mode: signaling shutdown")
                self.shutdown_event.set()

    def _handle_signal(self, signum: int) -> None:
        logger.info("Received signal %s, initiating graceful shutdown", signum)
        if self._pipeline is not None:
            self._pipeline.interrupt()
        self.shutdown_event.set()

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._handle_signal, signum)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(signum, lambda s, _frame: loop.call_soon_threadsafe(self._handle_signal, s))

    async def start(self) -> None:
        """
        Start scheduler or execute once.

        In scheduled mode, runs until a shutdown signal; an active run is
        interrupted and allowed to save before the scheduler stops.
        In RUN_ONCE mode, executes immediately and returns.

        Raises:
            ConfigurationError: If the model API key is missing
        """
        self.settings.require_model_api_key()
        self.setup_signal_handlers()

        if self.run_once:
            logger.info("Running in RUN_ONCE mode")
            await self.execute_ingestion()
            return

        logger.info("Running in scheduled mode")

        self.scheduler = AsyncIOScheduler()
        trigger = CronTrigger.from_crontab(self.settings.EXTRACT_SCHEDULE_CRON)
        self.scheduler.add_job(
            self.execute_ingestion,
            trigger=trigger,
            id="ingestion_job",
            name="Daily Compensation Ingestion",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info("Scheduler started")

        job = self.scheduler.get_job("ingestion_job")
        next_run = getattr(job, "next_run_time", None)
        logger.info(
            "Scheduled ingestion job",
            extra={
                "schedule": self.settings.EXTRACT_SCHEDULE_CRON,
                "next_run": str(next_run) if next_run is not None else None,
            },
        )

        await self.shutdown_event.wait()

        # Let an interrupted run finish saving
        await self._idle.wait()

        logger.info("Shutting down scheduler")
        self.scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown complete")


async def main() -> None:
    """Main entry point for scheduler."""
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)

    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")
    scheduler = IngestionScheduler(settings, run_once=run_once)

    try:
        await scheduler.start()
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)
    except Exception as e:
        logger.error("Scheduler failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())

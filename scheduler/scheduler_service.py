"""
Main scheduler service.

This module provides:
- Daily scheduling of the sync and digest jobs with APScheduler
- Job event logging
- Run-once mode for cron or manual invocation
- Graceful shutdown on SIGINT / SIGTERM
"""

import asyncio
import signal
import sys
from datetime import datetime
from typing import Dict, Optional

import structlog
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from circulation.repository import BookRepository
from scheduler.jobs import run_digest_job, run_sync_job
from scheduler.models import SchedulerConfig
from utilities.config import BookflowConfig

logger = structlog.get_logger(__name__)

SYNC_JOB_ID = "daily_sync"
DIGEST_JOB_ID = "daily_digest"


class SchedulerService:
    """Runs the sync and digest jobs on their daily schedules."""

    def __init__(
        self,
        config: SchedulerConfig,
        settings: BookflowConfig,
        repository: BookRepository,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize scheduler service.

        Args:
            config: Scheduler configuration
            settings: Runtime configuration handed to every job
            repository: Repository shared by both jobs
            install_signal_handlers: Register SIGINT/SIGTERM handlers
        """
        self.config = config
        self.settings = settings
        self.repository = repository
        self.scheduler = AsyncIOScheduler(timezone=config.timezone)
        self.logger = logger.bind(component="scheduler_service")
        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        if install_signal_handlers:
            self._setup_signal_handlers()
        self._setup_scheduler_listeners()

    @classmethod
    def from_settings(cls, settings: BookflowConfig, repository: BookRepository, **kwargs) -> "SchedulerService":
        scheduler_config = SchedulerConfig(
            sync_schedule_hour=settings.sync_schedule_hour,
            sync_schedule_minute=settings.sync_schedule_minute,
            digest_schedule_hour=settings.digest_schedule_hour,
            digest_schedule_minute=settings.digest_schedule_minute,
            timezone=settings.timezone,
            enable_sync_job=settings.enable_sync_job,
            enable_digest_job=settings.enable_digest_job,
        )
        return cls(scheduler_config, settings, repository, **kwargs)

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            self.logger.info("Received signal, shutting down gracefully", signal=signum)
            if self._stop_event is not None:
                self._loop.call_soon_threadsafe(self._stop_event.set)
            else:
                self.stop()
                sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _setup_scheduler_listeners(self) -> None:
        """Setup scheduler event listeners."""
        def job_executed_listener(event):
            self.logger.info(
                "Job executed",
                job_id=event.job_id,
                success=event.retval.get("success") if event.retval else None,
                duration=event.retval.get("duration", 0) if event.retval else 0,
            )

        def job_error_listener(event):
            self.logger.error(
                "Job execution failed",
                job_id=event.job_id,
                error=str(event.exception),
            )

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)

    async def start(self, test_mode: bool = False, run_once: bool = False, only: Optional[str] = None) -> None:
        """
        Start the scheduler service.

        Args:
            test_mode: Run the jobs on short intervals instead of daily
            run_once: Run the enabled jobs immediately and return
            only: Restrict run-once mode to ``"sync"`` or ``"digest"``
        """
        try:
            await self.repository.connect()

            if run_once:
                self.logger.info("Starting scheduler service in RUN ONCE MODE", only=only)
                await self.run_once(only)
                return

            if test_mode:
                self.add_test_scheduled_jobs()
            else:
                self.add_scheduled_jobs()
            self.scheduler.start()
            self.logger.info("Scheduler service started", timezone=self.config.timezone, test_mode=test_mode)

            self._loop = asyncio.get_running_loop()
            self._stop_event = asyncio.Event()
            await self._stop_event.wait()
            self.stop()

        except Exception as e:
            self.logger.error("Failed to start scheduler service", error=str(e))
            raise

        finally:
            await self.repository.disconnect()

    def stop(self) -> None:
        """Stop the scheduler service."""
        self.logger.info("Stopping scheduler service")
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.logger.info("Scheduler service stopped")

    def add_scheduled_jobs(self) -> None:
        """Register the enabled jobs with their cron triggers."""
        if self.config.enable_sync_job:
            self.scheduler.add_job(
                func=self._sync_job,
                trigger=CronTrigger(
                    hour=self.config.sync_schedule_hour,
                    minute=self.config.sync_schedule_minute,
                    timezone=self.config.timezone,
                ),
                id=SYNC_JOB_ID,
                name="Daily Loan Sync",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self.logger.info(
                "Added daily sync job",
                hour=self.config.sync_schedule_hour,
                minute=self.config.sync_schedule_minute,
            )

        if self.config.enable_digest_job:
            self.scheduler.add_job(
                func=self._digest_job,
                trigger=CronTrigger(
                    hour=self.config.digest_schedule_hour,
                    minute=self.config.digest_schedule_minute,
                    timezone=self.config.timezone,
                ),
                id=DIGEST_JOB_ID,
                name="Daily Note Digest",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self.logger.info(
                "Added daily digest job",
                hour=self.config.digest_schedule_hour,
                minute=self.config.digest_schedule_minute,
            )

    def add_test_scheduled_jobs(self) -> None:
        """Register the enabled jobs on short intervals for testing."""
        if self.config.enable_sync_job:
            self.scheduler.add_job(
                func=self._sync_job,
                trigger="interval",
                minutes=2,
                id=f"test_{SYNC_JOB_ID}",
                name="Test Loan Sync (2min)",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        if self.config.enable_digest_job:
            self.scheduler.add_job(
                func=self._digest_job,
                trigger="interval",
                minutes=5,
                id=f"test_{DIGEST_JOB_ID}",
                name="Test Note Digest (5min)",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self.logger.info("Added test jobs", sync_minutes=2, digest_minutes=5)

    async def run_once(self, only: Optional[str] = None) -> Dict[str, Dict]:
        """Run the enabled jobs immediately, sync before digest."""
        results = {}
        if only in (None, "sync") and self.config.enable_sync_job:
            results["sync"] = await self._sync_job()
        if only in (None, "digest") and self.config.enable_digest_job:
            results["digest"] = await self._digest_job()
        self.logger.info("Run once mode completed", jobs=list(results))
        return results

    async def _sync_job(self) -> Dict:
        start_time = datetime.utcnow()
        result = await run_sync_job(self.settings, repository=self.repository)
        return {
            "run_id": result.run_id,
            "success": result.success,
            "summary": result.summary.model_dump(),
            "error": result.error.code.value if result.error else None,
            "duration": (datetime.utcnow() - start_time).total_seconds(),
        }

    async def _digest_job(self) -> Dict:
        start_time = datetime.utcnow()
        sent = await run_digest_job(self.settings, repository=self.repository)
        return {
            "success": sent,
            "duration": (datetime.utcnow() - start_time).total_seconds(),
        }

    def get_scheduler_status(self) -> Dict:
        """Get current scheduler status."""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
                "trigger": str(job.trigger),
            })
        return {
            "running": self.scheduler.running,
            "timezone": self.config.timezone,
            "jobs": jobs,
            "job_count": len(jobs),
        }

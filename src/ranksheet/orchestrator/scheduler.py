"""
RankSheet Refresh Scheduler
===========================

Runs the job worker together with the periodic jobs that feed it.

Features:
    - Daily refresh of every active keyword (queued as one refresh_all job)
    - Daily ASIN cache cleanup
    - Hourly re-queue of keywords left in ERROR status
    - Run history per scheduled job

Usage:
    # Start scheduler daemon
    python -m ranksheet.orchestrator.cli schedule

    # Or use programmatically
    scheduler = RefreshScheduler(queue, keywords, asin_cache, supervisor)
    scheduler.start(blocking=True)

Configuration:
    SCHEDULER_REFRESH_CRON_HOUR: Hour for the daily refresh (default: 5)
    SCHEDULER_REFRESH_CRON_MINUTE: Minute for the daily refresh (default: 0)
    SCHEDULER_CLEANUP_CRON_HOUR: Hour for the cache cleanup (default: 3)
    SCHEDULER_TIMEZONE: Timezone (default: UTC)
"""

import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event
from typing import Any, Dict, List, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from ..cache.asin_cache import AsinCache
from ..data.config import get_env, get_env_int, get_settings
from ..data.models import KeywordStatus
from ..db.repositories import KeywordRepository
from ..jobs.queue import JobQueue
from ..jobs.worker import KickTrigger, WorkerSupervisor
from .maintenance import cleanup_asin_cache

logger = logging.getLogger(__name__)

REFRESH_ALL_JOB = "daily_refresh_all"
CACHE_CLEANUP_JOB = "daily_cache_cleanup"
RETRY_FAILED_JOB = "hourly_retry_failed"


@dataclass
class SchedulerConfig:
    """Scheduler configuration."""

    # Cron schedule for the daily refresh
    refresh_cron_hour: int = field(default_factory=lambda: get_env_int("SCHEDULER_REFRESH_CRON_HOUR", 5))
    refresh_cron_minute: int = field(default_factory=lambda: get_env_int("SCHEDULER_REFRESH_CRON_MINUTE", 0))
    cleanup_cron_hour: int = field(default_factory=lambda: get_env_int("SCHEDULER_CLEANUP_CRON_HOUR", 3))
    timezone: str = field(default_factory=lambda: get_env("SCHEDULER_TIMEZONE", "UTC"))

    # Keywords in ERROR re-queued per hourly pass
    retry_failed_limit: int = field(default_factory=lambda: get_env_int("SCHEDULER_RETRY_FAILED_LIMIT", 10))

    # Misfire grace time (seconds to consider a missed job)
    misfire_grace_time: int = field(default_factory=lambda: get_env_int("SCHEDULER_MISFIRE_GRACE", 3600))

    def get_cron_expression(self) -> str:
        """Get the daily refresh cron expression for logging."""
        return f"{self.refresh_cron_minute} {self.refresh_cron_hour} * * *"

    def __post_init__(self):
        """Validate configuration."""
        if not 0 <= self.refresh_cron_hour <= 23 or not 0 <= self.cleanup_cron_hour <= 23:
            raise ValueError("cron hours must be in 0..23")
        if not 0 <= self.refresh_cron_minute <= 59:
            raise ValueError("refresh_cron_minute must be in 0..59")


@dataclass
class RunHistory:
    """Tracks outcomes of one scheduled job."""
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    consecutive_failures: int = 0
    total_runs: int = 0
    total_failures: int = 0

    def record_run(self, success: bool):
        """Record a scheduled execution."""
        self.last_run_at = datetime.now(timezone.utc)
        self.last_run_status = "success" if success else "failed"
        self.total_runs += 1
        if success:
            self.consecutive_failures = 0
        else:
            self.total_failures += 1
            self.consecutive_failures += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_status": self.last_run_status,
            "consecutive_failures": self.consecutive_failures,
            "total_runs": self.total_runs,
            "total_failures": self.total_failures,
        }


class RefreshScheduler:
    """
    Cron-driven producer for the job queue.

    Scheduled jobs only enqueue work (or do cheap maintenance); the refreshes
    themselves run on the supervised worker thread.
    """

    def __init__(
        self,
        queue: JobQueue,
        keywords: KeywordRepository,
        asin_cache: AsinCache,
        supervisor: WorkerSupervisor,
        config: Optional[SchedulerConfig] = None,
    ):
        self.queue = queue
        self.keywords = keywords
        self.asin_cache = asin_cache
        self.supervisor = supervisor
        self.kick = KickTrigger(supervisor)
        self.config = config or SchedulerConfig()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._stop_event = Event()
        self._history: Dict[str, RunHistory] = {
            REFRESH_ALL_JOB: RunHistory(),
            CACHE_CLEANUP_JOB: RunHistory(),
            RETRY_FAILED_JOB: RunHistory(),
        }

        logger.info(
            f"RefreshScheduler initialized: "
            f"refresh={self.config.get_cron_expression()} {self.config.timezone}"
        )

    @property
    def is_running(self) -> bool:
        """Check if scheduler is currently running."""
        if self._scheduler is None:
            return False
        return self._scheduler.running

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, blocking: bool = False):
        """
        Start the worker and the scheduler.

        Args:
            blocking: If True, blocks until a stop signal is received
        """
        if self._scheduler is not None and self._scheduler.running:
            logger.warning("Scheduler is already running")
            return

        self._stop_event.clear()
        self._scheduler = BackgroundScheduler(timezone=self.config.timezone)

        common = dict(max_instances=1, coalesce=True, misfire_grace_time=self.config.misfire_grace_time)
        self._scheduler.add_job(
            self.enqueue_daily_refresh,
            trigger=CronTrigger(
                hour=self.config.refresh_cron_hour,
                minute=self.config.refresh_cron_minute,
                timezone=self.config.timezone,
            ),
            id=REFRESH_ALL_JOB,
            name="RankSheet Daily Refresh",
            **common,
        )
        self._scheduler.add_job(
            self.cleanup_cache,
            trigger=CronTrigger(hour=self.config.cleanup_cron_hour, minute=0, timezone=self.config.timezone),
            id=CACHE_CLEANUP_JOB,
            name="ASIN Cache Cleanup",
            **common,
        )
        self._scheduler.add_job(
            self.requeue_failed_keywords,
            trigger=CronTrigger(minute=30, timezone=self.config.timezone),
            id=RETRY_FAILED_JOB,
            name="Retry Failed Keywords",
            **common,
        )

        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self.supervisor.start()
        self._scheduler.start()
        logger.info(f"Scheduler started. Next refresh at: {self._get_next_run_time(REFRESH_ALL_JOB)}")

        if blocking:
            self._run_blocking()

    def stop(self, wait: bool = True):
        """
        Stop the scheduler and the worker.

        Args:
            wait: If True, waits for running jobs to complete
        """
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
            logger.info("Scheduler stopped")

        self.supervisor.stop(timeout=None if wait else 0)
        self._stop_event.set()

    def _run_blocking(self):
        """Block until stop signal received."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, stopping scheduler...")
            self._stop_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        logger.info("Scheduler running in blocking mode. Press Ctrl+C to stop.")
        self._stop_event.wait()
        self.stop()

    # =========================================================================
    # SCHEDULED JOBS
    # =========================================================================

    def enqueue_daily_refresh(self) -> str:
        """Queue a refresh of all active keywords and wake the worker."""
        refresh = get_settings().refresh
        job_id = self.queue.enqueue_refresh_all(
            concurrency=refresh.default_concurrency,
            limit=refresh.default_limit,
        )
        logger.info(f"Daily refresh queued: {job_id}", extra={"job_id": job_id})
        self.kick()
        return job_id

    def cleanup_cache(self) -> Dict[str, Any]:
        """Delete ASIN cache rows expired beyond the grace window."""
        result = cleanup_asin_cache(self.asin_cache, older_than_days=get_settings().cache.cleanup_grace_days)
        return result.to_dict()

    def requeue_failed_keywords(self) -> List[str]:
        """Queue a refresh for each active keyword in ERROR status."""
        failed = self.keywords.list_by_status(KeywordStatus.ERROR, self.config.retry_failed_limit)
        job_ids = [self.queue.enqueue_refresh_one(keyword.slug) for keyword in failed]
        if job_ids:
            logger.info(f"Re-queued {len(job_ids)} keywords in ERROR status")
            self.kick()
        return job_ids

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _get_next_run_time(self, job_id: str) -> Optional[datetime]:
        """Get the next run time of a scheduled job."""
        if self._scheduler is None:
            return None

        job = self._scheduler.get_job(job_id)
        if job is None:
            return None

        return job.next_run_time

    def _on_job_executed(self, event: JobExecutionEvent):
        """Handle successful job execution."""
        if event.job_id in self._history:
            self._history[event.job_id].record_run(success=True)
        logger.info(f"Job {event.job_id} executed successfully")

    def _on_job_error(self, event: JobExecutionEvent):
        """Handle job execution error."""
        history = self._history.get(event.job_id)
        if history is not None:
            history.record_run(success=False)
        logger.error(f"Job {event.job_id} raised an exception: {event.exception}")

    def _on_job_missed(self, event: JobExecutionEvent):
        """Handle missed job execution."""
        logger.warning(f"Job {event.job_id} missed its scheduled time")

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        """
        Get current scheduler status.

        Returns:
            Status dictionary with scheduler state and per-job history
        """
        jobs = {}
        for job_id, history in self._history.items():
            next_run = self._get_next_run_time(job_id)
            jobs[job_id] = {
                "next_run": next_run.isoformat() if next_run else None,
                "history": history.to_dict(),
            }

        return {
            "is_running": self.is_running,
            "worker_running": self.supervisor.is_running,
            "config": {
                "refresh_schedule": self.config.get_cron_expression(),
                "cleanup_hour": self.config.cleanup_cron_hour,
                "timezone": self.config.timezone,
            },
            "jobs": jobs,
        }

"""
RankSheet Job Worker
====================

Background execution of queued refresh jobs.

Components:
    - JobWorker: claims one job at a time and runs it to a terminal status
    - WorkerSupervisor: owns at most one worker thread per process
    - KickTrigger: debounced "make sure the worker is running" call

Usage:
    worker = JobWorker(queue, orchestrator, keywords)
    supervisor = WorkerSupervisor(worker)
    kick = KickTrigger(supervisor)

    job_id = queue.enqueue_refresh_one("wireless-mouse")
    kick()
"""

import logging
import threading
import time
from typing import Callable, Optional

from ..data.config import QueueConfig, get_settings
from ..db.repositories import KeywordRepository
from ..orchestrator.batch import refresh_all_keywords
from ..orchestrator.refresh import RefreshOrchestrator
from .queue import (
    JobDetail,
    JobName,
    JobQueue,
    JobState,
    JobStatus,
    RefreshAllDetail,
    RefreshOneDetail,
)

logger = logging.getLogger(__name__)

SAMPLE_ERRORS = 20


def _with_error(detail: JobDetail, message: str) -> JobDetail:
    if isinstance(detail, (RefreshOneDetail, RefreshAllDetail)):
        detail.error = message
        return detail
    return {**detail, "error": message}


class JobWorker:
    """
    Executes claimed jobs.

    ``run_once`` processes at most one job and never raises for job
    failures; ``run_forever`` loops until the stop event is set.
    """

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: RefreshOrchestrator,
        keywords: KeywordRepository,
        config: Optional[QueueConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.keywords = keywords
        self.config = config or get_settings().queue
        self._clock = clock

    def sweep_stale(self) -> int:
        """Fail stale RUNNING jobs; errors are logged, not raised."""
        try:
            return self.queue.fail_stale_jobs(self.config.stale_hours)
        except Exception as e:
            logger.warning(f"Stale job cleanup failed: {e}")
            return 0

    def run_once(self) -> Optional[JobState]:
        """
        Claim and execute the oldest queued job.

        Returns:
            The claimed job (with its final status), or None if the queue is empty
        """
        job = self.queue.claim_next()
        if job is None:
            return None

        extra = {"job_id": job.id, "job_name": job.job_name, "slug": job.keyword_slug}
        logger.info(f"Job started: {job.job_name} {job.id}", extra=extra)
        started = self._clock()

        try:
            status, detail = self._execute(job)
        except Exception as e:
            logger.exception(f"Job {job.id} raised: {e}", extra=extra)
            status, detail = JobStatus.FAILED, _with_error(job.detail, str(e) or type(e).__name__)

        duration_ms = int((self._clock() - started) * 1000)
        try:
            self.queue.mark_finished(job.id, status, duration_ms, detail)
        except Exception as e:
            logger.error(f"Recording result of job {job.id} failed, retrying: {e}", extra=extra)
            self.queue.mark_finished(job.id, status, duration_ms, detail)

        job.status = status
        job.duration_ms = duration_ms
        job.detail = detail
        logger.info(
            f"Job done: {job.job_name} {job.id} -> {status.value}",
            extra={**extra, "duration_ms": duration_ms},
        )
        return job

    def _execute(self, job: JobState):
        if job.job_name == JobName.REFRESH_ONE.value:
            detail = job.detail
            if not isinstance(detail, RefreshOneDetail):
                detail = RefreshOneDetail(keyword=job.keyword_slug or "")
            slug = (job.keyword_slug or detail.keyword).strip()

            result = self.orchestrator.refresh_keyword_by_slug(slug)
            detail.result = result.to_dict()
            return (JobStatus.SUCCESS if result.ok else JobStatus.FAILED), detail

        if job.job_name == JobName.REFRESH_ALL.value:
            detail = job.detail
            if not isinstance(detail, RefreshAllDetail):
                detail = RefreshAllDetail()

            batch = refresh_all_keywords(
                self.orchestrator,
                self.keywords,
                concurrency=detail.concurrency,
                limit=detail.limit,
            )
            detail.summary = batch.get_summary(max_errors=SAMPLE_ERRORS)
            return (JobStatus.SUCCESS if batch.failed == 0 else JobStatus.FAILED), detail

        return JobStatus.FAILED, _with_error(job.detail, "unknown_job_type")

    def run_forever(self, stop_event: threading.Event) -> None:
        """Process jobs until ``stop_event`` is set."""
        self.sweep_stale()
        logger.info("Job worker started")

        while not stop_event.is_set():
            try:
                job = self.run_once()
            except Exception as e:
                # Claim or mark failures (database down); back off and retry
                logger.error(f"Job worker iteration failed: {e}")
                job = None

            stop_event.wait(self.config.busy_sleep if job else self.config.idle_sleep)

        logger.info("Job worker stopped")


class WorkerSupervisor:
    """Runs one JobWorker on a daemon thread."""

    def __init__(self, worker: JobWorker):
        self.worker = worker
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """
        Start the worker thread.

        Returns:
            True if a thread was started, False if one is already running
        """
        with self._lock:
            if self.is_running:
                return False
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self.worker.run_forever,
                args=(self._stop_event,),
                name="ranksheet-job-worker",
                daemon=True,
            )
            self._thread.start()
            return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the worker to stop and wait for the current job to finish."""
        with self._lock:
            thread = self._thread
            self._stop_event.set()
        if thread is not None:
            thread.join(timeout)
        with self._lock:
            if self._thread is thread and not (thread and thread.is_alive()):
                self._thread = None

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)


class KickTrigger:
    """
    Debounced supervisor start.

    Calls within ``min_interval`` seconds of the last accepted kick are ignored.
    """

    def __init__(
        self,
        supervisor: WorkerSupervisor,
        min_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.supervisor = supervisor
        self.min_interval = get_settings().queue.kick_interval if min_interval is None else min_interval
        self._clock = clock
        self._last_kick: Optional[float] = None
        self._lock = threading.Lock()

    def __call__(self) -> bool:
        """
        Returns:
            True if the kick was accepted (not debounced)
        """
        with self._lock:
            now = self._clock()
            if self._last_kick is not None and now - self._last_kick < self.min_interval:
                return False
            self._last_kick = now

        if self.supervisor.start():
            logger.debug("Job worker started by kick")
        return True

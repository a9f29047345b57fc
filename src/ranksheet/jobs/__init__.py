"""
RankSheet Jobs Module
=====================

Durable refresh-job queue and its background worker.
"""

from .queue import JobName, JobQueue, JobState, JobStatus, RefreshAllDetail, RefreshOneDetail
from .worker import JobWorker, KickTrigger, WorkerSupervisor

__all__ = [
    "JobName",
    "JobQueue",
    "JobState",
    "JobStatus",
    "RefreshAllDetail",
    "RefreshOneDetail",
    "JobWorker",
    "KickTrigger",
    "WorkerSupervisor",
]

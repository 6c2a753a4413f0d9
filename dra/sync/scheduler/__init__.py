"""
Job queue, worker pool and refresh scheduler.
"""

from dra.sync.scheduler.job_queue import REFRESH_JOB, SYNC_JOB, InMemoryJobQueue, Job, JobQueue
from dra.sync.scheduler.refresh_scheduler import RefreshScheduler, TickResult, next_run_after
from dra.sync.scheduler.worker_pool import WorkerPool

__all__ = [
    "REFRESH_JOB",
    "SYNC_JOB",
    "InMemoryJobQueue",
    "Job",
    "JobQueue",
    "RefreshScheduler",
    "TickResult",
    "WorkerPool",
    "next_run_after",
]

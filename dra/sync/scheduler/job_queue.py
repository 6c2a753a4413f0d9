"""
Job queue consumed by the worker pool.

Producers (API calls, the refresh scheduler, sync cascades) only enqueue;
workers dequeue, run and acknowledge.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from dra.sync.models import utc_now

logger = logging.getLogger(__name__)

SYNC_JOB = "data_source"
REFRESH_JOB = "data_model"


@dataclass
class Job:
    """A sync (entity_type ``data_source``) or refresh (``data_model``) request."""
    entity_type: str
    entity_id: int
    payload: Dict[str, Any] = field(default_factory=dict)
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    created_at: datetime = field(default_factory=utc_now)

    @property
    def entity_key(self) -> Tuple[str, int]:
        return (self.entity_type, self.entity_id)


class JobQueue(ABC):
    """Ordered job queue."""

    @abstractmethod
    async def enqueue(self, job: Job) -> str:
        """Add a job; returns its id."""

    @abstractmethod
    async def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        """Next job, or None when nothing arrived within ``timeout``."""

    @abstractmethod
    async def ack(self, job: Job) -> None:
        """The job finished (successfully or terminally)."""

    @abstractmethod
    async def fail(self, job: Job, error: str) -> None:
        """The job failed terminally."""

    @abstractmethod
    async def requeue(self, job: Job) -> None:
        """Put a dequeued job back for another attempt; it stays pending meanwhile."""

    @abstractmethod
    def contains(self, job_id: str) -> bool:
        """Whether the job is waiting to be dequeued."""

    @abstractmethod
    def qsize(self) -> int:
        """Jobs waiting to be dequeued."""

    @abstractmethod
    def pending(self) -> int:
        """Jobs enqueued and not yet acknowledged or failed."""


class InMemoryJobQueue(JobQueue):
    """FIFO queue over asyncio.Queue for a single process."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._in_flight: Dict[str, Job] = {}
        self._waiting: Dict[str, Job] = {}
        self._unfinished = 0
        self.failed: Dict[str, str] = {}

    async def enqueue(self, job: Job) -> str:
        self._unfinished += 1
        self._waiting[job.job_id] = job
        await self._queue.put(job)
        logger.debug(f"Enqueued job {job.job_id} for {job.entity_type} {job.entity_id}")
        return job.job_id

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        try:
            if timeout is None:
                job = await self._queue.get()
            else:
                job = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        self._waiting.pop(job.job_id, None)
        self._in_flight[job.job_id] = job
        return job

    async def ack(self, job: Job) -> None:
        self._in_flight.pop(job.job_id, None)
        self._unfinished -= 1

    async def fail(self, job: Job, error: str) -> None:
        self._in_flight.pop(job.job_id, None)
        self._unfinished -= 1
        self.failed[job.job_id] = error
        logger.warning(f"Job {job.job_id} ({job.entity_type} {job.entity_id}) failed: {error}")

    async def requeue(self, job: Job) -> None:
        self._in_flight.pop(job.job_id, None)
        self._waiting[job.job_id] = job
        await self._queue.put(job)

    def contains(self, job_id: str) -> bool:
        return job_id in self._waiting

    def qsize(self) -> int:
        return self._queue.qsize()

    def pending(self) -> int:
        return self._unfinished

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

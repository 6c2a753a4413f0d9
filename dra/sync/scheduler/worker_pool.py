"""
Worker Pool.

A fixed number of asyncio workers consume the job queue. Jobs for the same
entity run one at a time in arrival order: a worker that dequeues a job for
a busy entity parks it behind the running one, and the worker finishing
that entity picks the parked jobs up. Different entities run in parallel.

Every job runs under a timeout. Retryable failures (rate limiting, job
timeout) are re-enqueued with exponential backoff up to
``job_max_attempts``.

A job discarded without running (cancelled before start, no handler, still
waiting when the pool stops) is failed on the queue and reported to
``on_dropped`` so its owner can undo whatever the request reserved.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple

from dra.config.settings import SyncSettings
from dra.sync.connectors.base import CancellationToken
from dra.sync.errors import DRAError, JobTimeout, RateLimitExceeded, RefreshInProgress, SyncInProgress
from dra.sync.scheduler.job_queue import Job, JobQueue
from dra.system.logging_config import get_logger
from dra.system.metrics import EngineMetrics
from dra.utils.retry import RetryConfig, calculate_delay

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job, CancellationToken], Awaitable[Any]]
DropHandler = Callable[[Job, str], Awaitable[None]]


class WorkerPool:
    """Runs queued jobs with per-entity serialization."""

    def __init__(self, queue: JobQueue, handlers: Dict[str, JobHandler],
                 settings: Optional[SyncSettings] = None,
                 metrics: Optional[EngineMetrics] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 on_dropped: Optional[DropHandler] = None):
        self.queue = queue
        self.handlers = handlers
        self.on_dropped = on_dropped
        self.settings = settings or SyncSettings()
        self.metrics = metrics
        self._sleep = sleep

        self._workers: list = []
        self._running = False
        self._active: Dict[Tuple[str, int], Job] = {}
        self._parked: Dict[Tuple[str, int], Deque[Job]] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._cancelled: Set[str] = set()
        self._retry_tasks: Set[asyncio.Task] = set()
        self._retrying: Dict[str, Tuple[Job, asyncio.Task]] = {}
        self._retry_config = RetryConfig(
            max_attempts=self.settings.job_max_attempts,
            base_delay=self.settings.job_retry_base_delay,
            max_delay=max(self.settings.job_retry_base_delay, 300.0),
            jitter=False,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"dra-worker-{i}")
            for i in range(self.settings.worker_count)
        ]
        logger.info(f"Worker pool started with {self.settings.worker_count} workers")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop accepting work; in-flight jobs get ``timeout`` seconds before they are cancelled.

        Jobs still queued, parked or waiting for a retry are dropped.
        """
        self._running = False
        for task in list(self._retry_tasks):
            task.cancel()
        if self._workers:
            done, pending = await asyncio.wait(self._workers, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []
        await asyncio.gather(*self._retry_tasks, return_exceptions=True)

        dropped = 0
        for job, _ in list(self._retrying.values()):
            await self._drop(job, "pool stopped before retry")
            dropped += 1
        self._retrying.clear()
        for key in list(self._parked):
            for job in self._parked.pop(key):
                await self._drop(job, "pool stopped")
                dropped += 1
        while self.queue.qsize():
            job = await self.queue.dequeue(timeout=0.1)
            if job is None:
                break
            await self._drop(job, "pool stopped")
            dropped += 1
        self._cancelled.clear()
        self._update_depth()
        logger.info("Worker pool stopped" + (f", {dropped} waiting jobs dropped" if dropped else ""))

    def is_idle(self) -> bool:
        return self.queue.pending() == 0 and not self._retry_tasks

    async def wait_idle(self, timeout: float = 30.0, poll_interval: float = 0.01) -> bool:
        """Wait until nothing is queued, running, parked or awaiting retry."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.is_idle():
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)
        return True

    # ========================================================================
    # Cancellation
    # ========================================================================

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a job.

        A running job has its token cancelled and stops at the next batch
        boundary; a queued, parked or retrying job is dropped before it starts.

        Returns:
            False when the job is unknown or already finished
        """
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel("cancelled")
            logger.info(f"Cancellation requested for running job {job_id}")
            return True
        for parked in self._parked.values():
            for job in list(parked):
                if job.job_id == job_id:
                    parked.remove(job)
                    await self._drop(job, "cancelled before start")
                    return True
        retrying = self._retrying.pop(job_id, None)
        if retrying is not None:
            job, task = retrying
            task.cancel()
            await self._drop(job, "cancelled before retry")
            return True
        if self.queue.contains(job_id):
            # Dropped by the worker that dequeues it
            self._cancelled.add(job_id)
            logger.info(f"Queued job {job_id} marked for cancellation")
            return True
        return False

    async def cancel_entity(self, entity_type: str, entity_id: int) -> int:
        """Cancel the running job and drop parked and retrying jobs of one entity."""
        key = (entity_type, entity_id)
        parked = self._parked.pop(key, deque())
        for job in parked:
            await self._drop(job, "cancelled before start")
        count = len(parked)
        for job_id, (job, task) in list(self._retrying.items()):
            if job.entity_key == key:
                del self._retrying[job_id]
                task.cancel()
                await self._drop(job, "cancelled before retry")
                count += 1
        active = self._active.get(key)
        if active is not None and active.job_id in self._tokens:
            self._tokens[active.job_id].cancel("cancelled")
            count += 1
        return count

    async def _drop(self, job: Job, reason: str) -> None:
        """Fail a job that never ran and tell its owner."""
        await self.queue.fail(job, reason)
        logger.info(f"Dropped job {job.job_id} ({job.entity_type} {job.entity_id}): {reason}")
        if self.on_dropped is not None:
            try:
                await self.on_dropped(job, reason)
            except Exception:
                logger.exception(f"Drop handler failed for job {job.job_id}")

    # ========================================================================
    # Workers
    # ========================================================================

    async def _worker(self, index: int) -> None:
        while self._running:
            job = await self.queue.dequeue(timeout=0.1)
            if job is None:
                continue
            self._update_depth()

            if job.job_id in self._cancelled:
                self._cancelled.discard(job.job_id)
                await self._drop(job, "cancelled before start")
                continue

            key = job.entity_key
            if key in self._active:
                self._parked.setdefault(key, deque()).append(job)
                logger.debug(f"Worker {index} parked job {job.job_id} behind {self._active[key].job_id}")
                continue

            await self._run_entity(job)

    async def _run_entity(self, job: Job) -> None:
        """Run a job, then every job parked for the same entity in order."""
        key = job.entity_key
        self._active[key] = job
        try:
            current: Optional[Job] = job
            while current is not None:
                self._active[key] = current
                await self._execute(current)
                parked = self._parked.get(key)
                current = parked.popleft() if parked else None
        finally:
            self._active.pop(key, None)
            if not self._parked.get(key):
                self._parked.pop(key, None)

    async def _execute(self, job: Job) -> None:
        handler = self.handlers.get(job.entity_type)
        if handler is None:
            await self._drop(job, f"no handler for {job.entity_type}")
            return

        token = CancellationToken()
        self._tokens[job.job_id] = token
        job.attempts += 1
        retryable = False
        error: Optional[str] = None

        try:
            result = await asyncio.wait_for(handler(job, token), timeout=self.settings.job_timeout_seconds)
            if getattr(result, "retryable", False):
                retryable = True
                error = getattr(result, "error_message", None) or "retryable failure"
        except asyncio.TimeoutError:
            retryable = True
            error = str(JobTimeout(f"job exceeded {self.settings.job_timeout_seconds}s"))
        except (SyncInProgress, RefreshInProgress) as e:
            # Held by another process; the caller retries later
            error = str(e)
        except (RateLimitExceeded, JobTimeout) as e:
            retryable = True
            error = str(e)
        except DRAError as e:
            error = str(e)
        except Exception as e:
            logger.exception(f"Job {job.job_id} ({job.entity_type} {job.entity_id}) crashed")
            error = str(e) or type(e).__name__
        finally:
            self._tokens.pop(job.job_id, None)

        outcome = "succeeded" if error is None else "failed"
        if retryable and job.attempts < self.settings.job_max_attempts and self._running:
            self._schedule_retry(job)
            outcome = "retried"
        elif error is not None:
            await self.queue.fail(job, error)
        else:
            await self.queue.ack(job)

        if self.metrics is not None:
            self.metrics.jobs_total.labels(entity_type=job.entity_type, outcome=outcome).inc()
        get_logger("dra.jobs", job_id=job.job_id, entity=f"{job.entity_type}:{job.entity_id}").info(
            f"Job {outcome} after attempt {job.attempts}" + (f": {error}" if error else "")
        )

    def _schedule_retry(self, job: Job) -> None:
        delay = calculate_delay(self._retry_config, job.attempts - 1)
        logger.warning(
            f"Job {job.job_id} ({job.entity_type} {job.entity_id}) attempt {job.attempts} "
            f"failed, retrying in {delay:.1f}s"
        )

        async def _requeue():
            await self._sleep(delay)
            self._retrying.pop(job.job_id, None)
            await self.queue.requeue(job)
            self._update_depth()

        task = asyncio.create_task(_requeue())
        self._retrying[job.job_id] = (job, task)
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    def _update_depth(self) -> None:
        if self.metrics is not None:
            self.metrics.queue_depth.set(self.queue.qsize())

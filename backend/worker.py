# backend/worker.py
"""
Generation queue: priority ordering, a fixed pool of asyncio workers,
retries with exponential backoff, cancellation and stall recovery.

Per job:
  1. queued -> active, "started" 10% "Checking cache..."
  2. cache hit -> completed, served from cache
  3. miss -> 25% "Generating...", one provider call per fingerprint
     (single-flight), 90% "Caching result...", completed 100%
  4. retryable failure with attempts left -> back to queued after backoff,
     anything else -> failed with the error detail
"""

import asyncio
import itertools
import json
import logging
import math
import time
from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, List, Optional

from .broadcaster import ProgressBroadcaster
from .cache import CacheStore, tags_for
from .errors import (
    CacheUnavailable,
    GenerationError,
    InternalError,
    InvalidInput,
    JobNotFound,
    JobStalled,
    QueueFull,
    RateLimited,
    StoreUnavailable,
)
from .fingerprint import fingerprint
from .invoker import ProviderInvoker
from .jobs import JobEvent, JobState, JobTable, QueueJob
from .model import ErrorDetail, GenerationRequest, GenerationResult, JobStatus, ProgressEvent, QueueStats
from .registry import ProviderRegistry
from .singleflight import SingleFlight
from .store import KeyValueStore

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = "job:"  # job:{job_id}
DEFAULT_PROCESSING_SECONDS = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    max_backoff_seconds: float = 60.0

    def delay_for(self, attempt: int, error: Optional[GenerationError] = None) -> float:
        """Delay before the retry that follows failed attempt number `attempt` (1-based)."""
        delay = self.backoff_seconds * (2 ** max(0, attempt - 1))
        if isinstance(error, RateLimited):
            delay = max(delay, error.retry_after)
        return min(delay, self.max_backoff_seconds)


class _Abandoned(Exception):
    """The running attempt no longer owns its job (cancelled or requeued)."""


class GenerationQueueManager:
    def __init__(
        self,
        cache: CacheStore,
        registry: ProviderRegistry,
        invoker: ProviderInvoker,
        broadcaster: ProgressBroadcaster,
        *,
        store: Optional[KeyValueStore] = None,
        max_concurrent: int = 5,
        max_queue_depth: int = 100,
        retry_policy: RetryPolicy = RetryPolicy(),
        stall_timeout: float = 300.0,
        watchdog_interval: Optional[float] = None,
        completed_retention: float = 24 * 3600,
        failed_retention: float = 7 * 24 * 3600,
        max_completed: int = 100,
        max_failed: int = 50,
        max_cancelled: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.cache = cache
        self.registry = registry
        self.invoker = invoker
        self.broadcaster = broadcaster
        self.store = store
        self.max_concurrent = max_concurrent
        self.max_queue_depth = max_queue_depth
        self.retry_policy = retry_policy
        self.stall_timeout = stall_timeout
        self.watchdog_interval = watchdog_interval or max(1.0, stall_timeout / 4)
        self.completed_retention = completed_retention
        self.failed_retention = failed_retention
        self._clock = clock

        self.jobs = JobTable(
            max_completed=max_completed, max_failed=max_failed, max_cancelled=max_cancelled
        )
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._flight = SingleFlight()
        self._workers: List[asyncio.Task] = []
        self._watchdog_task: Optional[asyncio.Task] = None
        self._timers: Dict[str, asyncio.Task] = {}
        self._processed = 0
        self._processing_total = 0.0

    # ---------------------------------------------------------------- public

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def average_processing_time(self) -> float:
        if not self._processed:
            return DEFAULT_PROCESSING_SECONDS
        return self._processing_total / self._processed

    async def enqueue(self, request: GenerationRequest) -> str:
        if request.id in self.jobs:
            raise InvalidInput(f"Job {request.id} already exists", suggested_fix="Use a new request id")

        waiting = self.jobs.count(JobState.QUEUED)
        if waiting >= self.max_queue_depth:
            logger.warning("Queue full (%d waiting), rejecting %s", waiting, request.id)
            raise QueueFull(f"Queue is full ({waiting} jobs waiting)")

        job = QueueJob(
            id=request.id,
            request=request,
            fingerprint=fingerprint(request),
            max_attempts=self.retry_policy.max_attempts,
            created_at=self._clock(),
        )
        self.jobs.add(job)
        self._push(job)
        logger.info(
            "Queued job %s (priority=%s, provider=%s, fingerprint=%s)",
            job.id,
            request.priority.value,
            request.provider or "auto",
            job.fingerprint[:12],
        )
        await self._mirror(job)
        return job.id

    def get_job(self, job_id: str) -> QueueJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def position(self, job: QueueJob) -> Optional[int]:
        """Number of waiting jobs that will be served before `job`."""
        if job.state is not JobState.QUEUED or not job.ready:
            return None
        return sum(
            1
            for other in self.jobs.in_state(JobState.QUEUED)
            if other.ready and other is not job and other.ahead_of(job)
        )

    def status(self, job_id: str) -> JobStatus:
        job = self.get_job(job_id)
        position = self.position(job)
        estimated_wait = None
        if position is not None:
            estimated_wait = math.ceil(position / self.max_concurrent) * self.average_processing_time
        elif job.state is JobState.QUEUED and job.retry_at is not None:
            estimated_wait = max(0.0, job.retry_at - self._clock())
        return JobStatus(
            job_id=job.id,
            state=job.state.value,
            progress=job.progress,
            attempts=job.attempts,
            position=position,
            estimated_wait=estimated_wait,
            result=job.result,
            error=job.error,
        )

    async def cancel(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.is_terminal:
            return False

        was = job.state
        job.apply(JobEvent.CANCEL)
        job.cancel_requested = True
        job.ready = False
        job.finished_at = self._clock()
        job.error = ErrorDetail(code="CANCELLED", message="Job cancelled")
        timer = self._timers.pop(job.id, None)
        if timer is not None:
            timer.cancel()

        logger.info("Cancelled job %s (was %s)", job.id, was.value)
        self._emit(job, "error", job.progress, "Cancelled")
        await self._mirror(job)
        await self._forget(self.jobs.enforce_history())
        return True

    async def discard(self, job_id: str) -> bool:
        """Forget a finished job."""
        job = self.jobs.get(job_id)
        if job is None or not job.is_terminal:
            return False
        self.jobs.remove(job_id)
        await self._forget([job_id])
        return True

    def stats(self) -> QueueStats:
        return QueueStats(
            waiting=self.jobs.count(JobState.QUEUED),
            active=self.jobs.count(JobState.ACTIVE),
            completed=self.jobs.count(JobState.COMPLETED),
            failed=self.jobs.count(JobState.FAILED),
            cancelled=self.jobs.count(JobState.CANCELLED),
        )

    async def cleanup(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        removed = self.jobs.prune(now, self.completed_retention, self.failed_retention)
        await self._forget(removed)
        if removed:
            logger.info("Cleaned up %d old jobs", len(removed))
        return len(removed)

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"generation-worker-{i}")
            for i in range(self.max_concurrent)
        ]
        self._watchdog_task = asyncio.create_task(self._watchdog(), name="generation-watchdog")
        logger.info("Started %d generation workers", self.max_concurrent)

    async def stop(self) -> None:
        tasks = list(self._workers) + list(self._timers.values())
        if self._watchdog_task is not None:
            tasks.append(self._watchdog_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._flight.aclose()
        self._workers = []
        self._timers.clear()
        self._watchdog_task = None
        logger.info("Generation workers stopped")

    async def recover_stalled(self, now: Optional[float] = None) -> int:
        """
        Requeue active jobs with no heartbeat for `stall_timeout` seconds.
        A job is recovered once; a second stall fails it.
        """
        now = self._clock() if now is None else now
        recovered = 0
        for job in self.jobs.in_state(JobState.ACTIVE):
            if now - job.heartbeat < self.stall_timeout:
                continue
            recovered += 1
            job.run_token += 1
            if job.stalls >= 1:
                error = JobStalled(f"Job {job.id} stalled twice")
                logger.error("Job %s stalled again, giving up", job.id)
                await self._fail(job, error)
                continue
            job.stalls += 1
            job.apply(JobEvent.STALL)
            logger.warning("Job %s stalled for %.0fs, requeueing", job.id, now - job.heartbeat)
            self._push(job)
            self._emit(job, "progress", job.progress, "Requeued after stall")
            await self._mirror(job)
        return recovered

    # --------------------------------------------------------------- workers

    def _push(self, job: QueueJob) -> None:
        job.seq = next(self._seq)
        job.ready = True
        job.retry_at = None
        self._queue.put_nowait((job.rank, job.seq, job.id))

    async def _worker_loop(self, worker_id: int) -> None:
        logger.debug("Worker %d started", worker_id)
        while True:
            _, seq, job_id = await self._queue.get()
            try:
                job = self.jobs.get(job_id)
                # cancelled or re-pushed jobs leave stale heap entries behind
                if job is None or job.state is not JobState.QUEUED or job.seq != seq:
                    continue
                logger.info("Worker %d processing job %s", worker_id, job_id)
                await self.process_job(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker %d crashed on job %s", worker_id, job_id)
            finally:
                self._queue.task_done()

    async def _watchdog(self) -> None:
        while True:
            await asyncio.sleep(self.watchdog_interval)
            try:
                await self.recover_stalled()
                await self.cleanup()
            except Exception:
                logger.exception("Watchdog pass failed")

    async def process_job(self, job: QueueJob) -> None:
        job.ready = False
        job.apply(JobEvent.START)
        job.attempts += 1
        job.run_token += 1
        token = job.run_token
        job.started_at = job.heartbeat = self._clock()
        self._emit(job, "started", 10, "Checking cache...")
        await self._mirror(job)

        started = time.perf_counter()
        try:
            result = await self._execute(job, token)
        except _Abandoned:
            logger.info("Job %s attempt %d abandoned (%s)", job.id, job.attempts, job.state.value)
        except GenerationError as e:
            if self._owns(job, token):
                await self._handle_failure(job, e)
        except Exception as e:
            logger.exception("Unexpected error processing job %s", job.id)
            if self._owns(job, token):
                await self._fail(job, InternalError(f"Internal error: {type(e).__name__}"))
        else:
            if self._owns(job, token):
                await self._complete(job, result, time.perf_counter() - started)

    async def _execute(self, job: QueueJob, token: int) -> GenerationResult:
        started = time.perf_counter()
        entry = await self._lookup(job.fingerprint)
        self._checkpoint(job, token)
        if entry is not None:
            return self.cache.to_result(entry, job.request, time.perf_counter() - started)

        self._progress(job, token, 25, "Generating...")
        result, leader = await self._flight.run(job.fingerprint, partial(self._generate, job, token))
        self._checkpoint(job, token)
        if not leader:
            logger.info("Job %s shared an in-flight generation", job.id)
            result = result.model_copy(
                update={
                    "request_id": job.id,
                    "cache_hit": True,
                    "cost": 0.0,
                    "processing_time": time.perf_counter() - started,
                }
            )
        return result

    async def _generate(self, job: QueueJob, token: int) -> GenerationResult:
        request = job.request
        # another flight may have finished between our lookup and now
        entry = await self._lookup(job.fingerprint)
        if entry is not None:
            return self.cache.to_result(entry, request)

        provider_id = self.registry.select_default(request.provider, request.max_cost)
        logger.info("Job %s generating with %s", job.id, provider_id)
        result = await self.invoker.invoke(provider_id, request)

        self._progress(job, token, 90, "Caching result...")
        try:
            await self.cache.put(job.fingerprint, result, tags=tags_for(request), request=request)
        except CacheUnavailable as e:
            logger.warning("Could not cache result for job %s: %s", job.id, e)
        return result

    async def _lookup(self, fp: str):
        try:
            return await self.cache.lookup(fp)
        except CacheUnavailable as e:
            logger.warning("Cache unavailable, treating %s as a miss: %s", fp[:12], e)
            return None

    # ------------------------------------------------------------- outcomes

    async def _complete(self, job: QueueJob, result: GenerationResult, elapsed: float) -> None:
        job.result = result
        job.error = None
        job.apply(JobEvent.COMPLETE)
        job.finished_at = self._clock()
        self._processed += 1
        self._processing_total += elapsed

        message = "Retrieved from cache" if result.cache_hit else "Generation completed"
        logger.info(
            "Job %s completed in %.2fs (provider=%s, cache_hit=%s)",
            job.id,
            elapsed,
            result.provider,
            result.cache_hit,
        )
        self._emit(job, "completed", 100, message)
        await self._mirror(job)
        await self._forget(self.jobs.enforce_history())

    async def _handle_failure(self, job: QueueJob, error: GenerationError) -> None:
        if not error.retryable or job.attempts >= job.max_attempts:
            await self._fail(job, error)
            return

        delay = self.retry_policy.delay_for(job.attempts, error)
        job.apply(JobEvent.FAIL)
        job.error = error.to_detail()
        job.apply(JobEvent.RETRY)
        job.backoffs.append(delay)
        job.retry_at = self._clock() + delay
        logger.warning(
            "Job %s attempt %d/%d failed (%s: %s), retrying in %.1fs",
            job.id,
            job.attempts,
            job.max_attempts,
            error.code,
            error.message,
            delay,
        )
        self._emit(job, "progress", job.progress, f"Attempt {job.attempts} failed, retrying in {delay:.0f}s")
        self._timers[job.id] = asyncio.create_task(self._retry_later(job, delay))
        await self._mirror(job)

    async def _retry_later(self, job: QueueJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(job.id, None)
        if job.state is JobState.QUEUED and not job.ready and self.jobs.get(job.id) is job:
            self._push(job)
            await self._mirror(job)

    async def _fail(self, job: QueueJob, error: GenerationError) -> None:
        job.apply(JobEvent.FAIL)
        job.error = error.to_detail()
        job.finished_at = self._clock()
        logger.error(
            "Job %s failed after %d attempt(s): %s (%s)", job.id, job.attempts, error.message, error.code
        )
        self._emit(job, "error", job.progress, error.message)
        await self._mirror(job)
        await self._forget(self.jobs.enforce_history())

    # -------------------------------------------------------------- helpers

    @staticmethod
    def _owns(job: QueueJob, token: int) -> bool:
        return job.run_token == token and job.state is JobState.ACTIVE

    def _checkpoint(self, job: QueueJob, token: int) -> None:
        if not self._owns(job, token):
            raise _Abandoned()
        job.heartbeat = self._clock()

    def _progress(self, job: QueueJob, token: int, progress: int, message: str) -> None:
        if self._owns(job, token):
            job.heartbeat = self._clock()
            self._emit(job, "progress", progress, message)

    def _emit(self, job: QueueJob, kind: str, progress: int, message: str) -> None:
        job.progress = max(job.progress, progress)
        self.broadcaster.publish(
            ProgressEvent(type=kind, job_id=job.id, message=message, progress=job.progress)
        )

    async def _mirror(self, job: QueueJob) -> None:
        if self.store is None:
            return
        try:
            await self.store.set(
                f"{JOB_KEY_PREFIX}{job.id}", json.dumps(job.snapshot()), ttl=self.failed_retention
            )
        except StoreUnavailable as e:
            logger.warning("Could not record status of job %s: %s", job.id, e)

    async def _forget(self, job_ids: List[str]) -> None:
        if self.store is None or not job_ids:
            return
        try:
            await self.store.delete(*(f"{JOB_KEY_PREFIX}{job_id}" for job_id in job_ids))
        except StoreUnavailable as e:
            logger.warning("Could not delete job records: %s", e)

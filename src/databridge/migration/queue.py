"""
Job queue for pipeline stages.

``JobQueue`` is the interface the orchestrator depends on. ``AsyncJobQueue``
is an in-process implementation on top of asyncio: priority ordering,
explicit job dependencies, per-job retries with exponential backoff,
bounded worker concurrency, a start-rate limiter, pause/resume and bounded
retention of finished jobs.

The queue is constructed explicitly and injected; there is no module-level
instance.
"""

import asyncio
import itertools
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from databridge.client.exceptions import JobNotFoundError, QueueError
from databridge.config import PipelineConfig, QueueConfig
from databridge.migration.pipeline import PIPELINE_STAGES, StageId, stage_priority
from databridge.utils.logging import get_logger

logger = get_logger(__name__)


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


def stage_job_id(execution_id: str, stage_id: StageId | str) -> str:
    """Queue key of a stage job; one job per (execution, stage)."""
    return f"{execution_id}-{StageId(stage_id).value}"


@dataclass
class Job:
    """A unit of work held by the queue."""

    id: str
    name: str
    data: dict[str, Any]
    priority: int
    attempts: int
    backoff_delay_ms: int
    seq: int
    depends_on: str | None = None
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    progress: int = 0
    failed_reason: str | None = None
    return_value: Any = None
    created_at: float = 0.0
    available_at: float = 0.0
    processed_at: float | None = None
    finished_at: float | None = None

    def update_progress(self, value: int) -> None:
        self.progress = max(0, min(100, int(value)))


@dataclass(frozen=True)
class JobStatus:
    state: str
    progress: int
    attempts_made: int
    failed_reason: str | None


@dataclass(frozen=True)
class QueueStats:
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "total",
            self.waiting + self.active + self.completed + self.failed + self.delayed,
        )


JobProcessor = Callable[[Job], Awaitable[Any]]


class JobQueue(ABC):
    """Interface of the stage job queue."""

    @abstractmethod
    def enqueue_stage(
        self,
        execution_id: str,
        stage_id: StageId | str,
        payload: dict[str, Any],
        depends_on: str | None = None,
        attempts: int | None = None,
        backoff_delay_ms: int | None = None,
    ) -> str:
        """Enqueue one stage job and return its id (existing id on duplicates)."""

    @abstractmethod
    def cancel(self, job_id: str) -> bool:
        """Remove a job that has not started. Returns False otherwise."""

    @abstractmethod
    def pause(self) -> None:
        """Stop workers from pulling new jobs."""

    @abstractmethod
    def resume(self) -> None:
        """Let workers pull jobs again."""

    @abstractmethod
    def stats(self) -> QueueStats:
        """Counts of jobs by state."""

    @abstractmethod
    def status(self, job_id: str) -> JobStatus | None:
        """State of one job, or None if the queue does not know it."""

    def enqueue_pipeline(
        self, project_id: str, execution_id: str, config: PipelineConfig
    ) -> list[str]:
        """
        Enqueue the six stage jobs of an execution.

        Each stage depends on the previous one, so a stage never starts
        before its predecessor completed, whatever the worker count.
        """
        job_ids: list[str] = []
        previous: str | None = None
        for stage in PIPELINE_STAGES:
            payload = {
                "project_id": project_id,
                "execution_id": execution_id,
                "stage_id": stage.value,
                "config": config.model_dump(mode="json"),
            }
            job_id = self.enqueue_stage(
                execution_id,
                stage,
                payload,
                depends_on=previous,
                attempts=config.retry_attempts,
                backoff_delay_ms=config.retry_delay_ms,
            )
            job_ids.append(job_id)
            previous = job_id
        return job_ids


class RateLimiter:
    """Allows at most ``max_starts`` acquisitions per sliding window."""

    def __init__(
        self,
        max_starts: int,
        window_ms: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_starts = max_starts
        self.window = window_ms / 1000
        self._clock = clock
        self._sleep = sleep
        self._starts: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                while self._starts and now - self._starts[0] >= self.window:
                    self._starts.popleft()
                if len(self._starts) < self.max_starts:
                    self._starts.append(now)
                    return
                await self._sleep(self._starts[0] + self.window - now)


class AsyncJobQueue(JobQueue):
    """
    In-process asyncio job queue.

    Usage:
        queue = AsyncJobQueue(QueueConfig(), processor=runner)
        await queue.start()
        queue.enqueue_pipeline("p1", "e1", PipelineConfig())
        await queue.wait_until_idle()
        await queue.close()

    A job is eligible when it is waiting, its delay has elapsed and the job
    it depends on (if any) has completed. Among eligible jobs the lowest
    priority value runs first, ties in enqueue order. When a job fails for
    good, every job depending on it fails with a dependency reason.
    """

    def __init__(
        self,
        config: QueueConfig | None = None,
        processor: JobProcessor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or QueueConfig()
        self.processor = processor
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._seq = itertools.count()
        self._limiter = RateLimiter(
            self.config.rate_limit_max, self.config.rate_limit_window_ms, clock=clock
        )
        self._changed = asyncio.Event()
        self._running = asyncio.Event()
        self._running.set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._workers: list[asyncio.Task] = []
        self._closing = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue_stage(
        self,
        execution_id: str,
        stage_id: StageId | str,
        payload: dict[str, Any],
        depends_on: str | None = None,
        attempts: int | None = None,
        backoff_delay_ms: int | None = None,
    ) -> str:
        if self._closing:
            raise QueueError(f"Queue {self.config.name} is closed")

        stage = StageId(stage_id)
        job_id = stage_job_id(execution_id, stage)
        if job_id in self._jobs:
            logger.info("job_duplicate_ignored", job_id=job_id, state=self._jobs[job_id].state.value)
            return job_id

        now = self._clock()
        job = Job(
            id=job_id,
            name=stage.value,
            data=payload,
            priority=stage_priority(stage.value),
            attempts=attempts or self.config.default_attempts,
            backoff_delay_ms=(
                self.config.backoff_delay_ms if backoff_delay_ms is None else backoff_delay_ms
            ),
            seq=next(self._seq),
            depends_on=depends_on,
            created_at=now,
            available_at=now,
        )
        self._jobs[job_id] = job
        self._idle.clear()
        self._changed.set()

        logger.info(
            "job_enqueued",
            queue=self.config.name,
            job_id=job_id,
            priority=job.priority,
            depends_on=depends_on,
        )
        return job_id

    def get_job(self, job_id: str) -> Job:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(f"Unknown job: {job_id}") from None

    def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.state not in (JobState.WAITING, JobState.DELAYED):
            return False

        del self._jobs[job_id]
        self._fail_dependents(job_id, f"dependency {job_id} cancelled")
        self._refresh_idle()
        self._changed.set()
        logger.info("job_cancelled", job_id=job_id)
        return True

    def pause(self) -> None:
        self._running.clear()
        logger.info("queue_paused", queue=self.config.name)

    def resume(self) -> None:
        self._running.set()
        self._changed.set()
        logger.info("queue_resumed", queue=self.config.name)

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    def stats(self) -> QueueStats:
        counts = {state: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state] += 1
        return QueueStats(
            waiting=counts[JobState.WAITING],
            active=counts[JobState.ACTIVE],
            completed=counts[JobState.COMPLETED],
            failed=counts[JobState.FAILED],
            delayed=counts[JobState.DELAYED],
        )

    def status(self, job_id: str) -> JobStatus | None:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        return JobStatus(
            state=job.state.value,
            progress=job.progress,
            attempts_made=job.attempts_made,
            failed_reason=job.failed_reason,
        )

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker tasks."""
        if self.processor is None:
            raise QueueError("A processor is required to start the queue")
        if self._workers:
            return
        self._closing = False
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"{self.config.name}-worker-{index}")
            for index in range(self.config.concurrency)
        ]
        logger.info("queue_started", queue=self.config.name, concurrency=self.config.concurrency)

    async def close(self) -> None:
        """Stop pulling jobs and wait for in-flight jobs to finish."""
        self._closing = True
        self._changed.set()
        self._running.set()
        if self._workers:
            await asyncio.gather(*self._workers)
        self._workers = []
        logger.info("queue_closed", queue=self.config.name)

    async def wait_until_idle(self, timeout: float | None = None) -> None:
        """
        Wait until no job is waiting, delayed or active.

        Never returns while the queue is paused with pending jobs unless a
        timeout is given.

        Raises:
            TimeoutError: If the timeout elapses first
        """
        await asyncio.wait_for(self._idle.wait(), timeout)

    async def _worker(self, index: int) -> None:
        while not self._closing:
            await self._running.wait()
            if self._closing:
                break

            job = self._claim_next()
            if job is None:
                self._changed.clear()
                await self._wait_for_change()
                continue

            await self._limiter.acquire()
            await self._process(job)

    async def _wait_for_change(self) -> None:
        delay = self._next_delay()
        try:
            await asyncio.wait_for(self._changed.wait(), delay)
        except TimeoutError:
            pass

    def _next_delay(self) -> float | None:
        delayed = [j.available_at for j in self._jobs.values() if j.state == JobState.DELAYED]
        if not delayed:
            return None
        return max(0.0, min(delayed) - self._clock())

    def _dependency_met(self, job: Job) -> bool:
        if job.depends_on is None:
            return True
        dependency = self._jobs.get(job.depends_on)
        # Completed jobs may have been pruned; failed and cancelled ones cascade
        return dependency is None or dependency.state == JobState.COMPLETED

    def _claim_next(self) -> Job | None:
        now = self._clock()
        for job in self._jobs.values():
            if job.state == JobState.DELAYED and job.available_at <= now:
                job.state = JobState.WAITING

        eligible = [
            job
            for job in self._jobs.values()
            if job.state == JobState.WAITING and self._dependency_met(job)
        ]
        if not eligible:
            return None

        job = min(eligible, key=lambda j: (j.priority, j.seq))
        job.state = JobState.ACTIVE
        return job

    async def _process(self, job: Job) -> None:
        job.attempts_made += 1
        job.processed_at = self._clock()
        logger.info("job_started", job_id=job.id, attempt=job.attempts_made, attempts=job.attempts)

        try:
            job.return_value = await self.processor(job)
        except Exception as e:
            job.failed_reason = str(e) or type(e).__name__
            if job.attempts_made < job.attempts:
                delay_ms = job.backoff_delay_ms * 2 ** (job.attempts_made - 1)
                job.state = JobState.DELAYED
                job.available_at = self._clock() + delay_ms / 1000
                logger.warning(
                    "job_retry_scheduled",
                    job_id=job.id,
                    attempt=job.attempts_made,
                    delay_ms=delay_ms,
                    error=job.failed_reason,
                )
            else:
                job.state = JobState.FAILED
                job.finished_at = self._clock()
                logger.error(
                    "job_failed",
                    job_id=job.id,
                    attempts_made=job.attempts_made,
                    error=job.failed_reason,
                )
                self._fail_dependents(job.id, f"dependency {job.id} failed")
        else:
            job.state = JobState.COMPLETED
            job.failed_reason = None
            job.finished_at = self._clock()
            logger.info("job_completed", job_id=job.id, attempts_made=job.attempts_made)
        finally:
            self._prune()
            self._refresh_idle()
            self._changed.set()

    def _fail_dependents(self, job_id: str, reason: str) -> None:
        pending = [job_id]
        while pending:
            parent = pending.pop()
            for job in self._jobs.values():
                if job.depends_on == parent and job.state in (JobState.WAITING, JobState.DELAYED):
                    job.state = JobState.FAILED
                    job.failed_reason = reason
                    job.finished_at = self._clock()
                    logger.warning("job_dependency_failed", job_id=job.id, reason=reason)
                    pending.append(job.id)

    def _prune(self) -> None:
        now = self._clock()
        for state, keep_count, keep_age in (
            (JobState.COMPLETED, self.config.keep_completed_count, self.config.keep_completed_age_s),
            (JobState.FAILED, self.config.keep_failed_count, self.config.keep_failed_age_s),
        ):
            finished = sorted(
                (j for j in self._jobs.values() if j.state == state),
                key=lambda j: j.finished_at or 0.0,
                reverse=True,
            )
            for position, job in enumerate(finished):
                if position >= keep_count or now - (job.finished_at or now) > keep_age:
                    del self._jobs[job.id]

    def _refresh_idle(self) -> None:
        busy = any(
            job.state in (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)
            for job in self._jobs.values()
        )
        if busy:
            self._idle.clear()
        else:
            self._idle.set()

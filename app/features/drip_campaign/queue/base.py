"""
Shared email job queue machinery.

BaseJobQueue owns everything that is independent of where jobs are stored:
the processing loop, the bounded worker pool, the global throughput limiter,
retry/backoff and graceful shutdown. Storage backends (in-process heap or
Redis lists) only implement the small set of _push/_claim/_ack style hooks.
"""

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from app.config import settings
from app.features.drip_campaign.domain import (
    DripUser,
    EmailJob,
    WeeklyEmailJob,
    WelcomeEmailJob,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

JobHandler = Callable[[EmailJob], Awaitable[None]]


class JobQueueError(Exception):
    """Raised when the queue cannot accept or store a job."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class QueueClosedError(JobQueueError):
    """Raised when a job is submitted while the queue is shutting down."""

    def __init__(self, message: str = "Email queue is shutting down"):
        super().__init__(message, operation="enqueue", recoverable=False)


@dataclass(slots=True)
class RetryPolicy:
    """Bounded retry with exponential backoff. max_attempts counts every attempt."""

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.EMAIL_QUEUE_MAX_ATTEMPTS,
            base_delay_seconds=settings.EMAIL_QUEUE_BACKOFF_BASE_SECONDS,
            max_delay_seconds=settings.EMAIL_QUEUE_BACKOFF_MAX_SECONDS,
        )

    def should_retry(self, attempt_count: int) -> bool:
        return attempt_count < self.max_attempts

    def backoff_seconds(self, attempt_count: int) -> float:
        """Delay before the next attempt, after `attempt_count` attempts have failed."""
        exponent = max(attempt_count - 1, 0)
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)


class SlidingWindowRateLimiter:
    """At most `max_calls` acquisitions in any rolling `window_seconds` window."""

    def __init__(
        self,
        max_calls: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_seconds:
            self._calls.popleft()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return

                wait_for = self._calls[0] + self.window_seconds - now
                logger.debug("Email queue rate limit reached", wait_seconds=round(wait_for, 2))
                await asyncio.sleep(max(wait_for, 0.001))

    def refund(self) -> None:
        """Give back the most recent slot (used when nothing was claimed)."""
        if self._calls:
            self._calls.pop()

    def current_usage(self) -> int:
        self._prune(self._clock())
        return len(self._calls)


@dataclass(slots=True)
class ClaimedJob:
    """A job taken off the ready queue, plus whatever the backend needs to ack it."""

    job: EmailJob
    receipt: Any = None


class BaseJobQueue:
    """
    Email job queue with priority, bounded concurrency, throughput limiting
    and bounded retries.

    Subclasses provide storage through the hook methods at the bottom of this
    class. The handler (normally the delivery pipeline's process_job) is
    injected so tests can run the queue against any coroutine.
    """

    backend_name = "base"

    def __init__(
        self,
        handler: JobHandler | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        concurrency: int = 3,
        rate_limit_max: int = 10,
        rate_limit_window_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
        keep_completed: int = 50,
        keep_failed: int = 100,
        shutdown_timeout_seconds: float = 30.0,
    ):
        self._handler = handler
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.shutdown_timeout_seconds = shutdown_timeout_seconds

        self._rate_limiter = SlidingWindowRateLimiter(rate_limit_max, rate_limit_window_seconds)
        self._slots = asyncio.Semaphore(concurrency)
        self._wakeup = asyncio.Event()
        self._in_flight: set[asyncio.Task] = set()
        self._loop_task: asyncio.Task | None = None
        self._closing = False
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    def set_handler(self, handler: JobHandler) -> None:
        self._handler = handler

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def enqueue_welcome(self, user: DripUser) -> str:
        return await self.enqueue(WelcomeEmailJob(user=user))

    async def enqueue_weekly(self, user: DripUser, week_number: int) -> str:
        return await self.enqueue(WeeklyEmailJob(user=user, week_number=week_number))

    async def enqueue(self, job: EmailJob) -> str:
        """Store a job and wake the processing loop. Returns the job id."""
        if self._closing:
            logger.warning(
                "Rejected email job during shutdown",
                job_id=job.id,
                kind=job.kind,
                user_id=job.user.id,
            )
            raise QueueClosedError()

        await self._push(job)
        self._wakeup.set()

        logger.info(
            "Email job enqueued",
            job_id=job.id,
            kind=job.kind,
            user_id=job.user.id,
            week_number=job.week_number,
            priority=job.priority,
            resend=job.resend,
            backend=self.backend_name,
        )
        return job.id

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover leftovers from a previous run and start the processing loop."""
        if self.is_running:
            logger.warning("Email queue already running")
            return
        if self._closing:
            raise QueueClosedError("Cannot restart a queue that has been shut down")

        recovered = await self._recover()
        if recovered:
            logger.warning("Recovered in-flight email jobs", count=recovered)

        self._started = True
        self._loop_task = asyncio.create_task(self.processing_loop(), name="email-queue-loop")
        logger.info(
            "Email queue started",
            backend=self.backend_name,
            concurrency=self.concurrency,
            max_attempts=self.retry_policy.max_attempts,
        )

    async def processing_loop(self) -> None:
        """Pull ready jobs and run each one on a bounded worker slot."""
        while not self._closing:
            await self._slots.acquire()
            claimed = None
            try:
                if self._closing:
                    break

                await self._rate_limiter.acquire()
                if self._closing:
                    self._rate_limiter.refund()
                    break

                self._wakeup.clear()
                claimed = await self._claim()
                if claimed is None:
                    self._rate_limiter.refund()
            finally:
                if claimed is None:
                    self._slots.release()

            if claimed is None:
                await self._wait_for_work()
                continue

            task = asyncio.create_task(self._run_claimed(claimed))
            self._in_flight.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._slots.release()

    async def _wait_for_work(self) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval_seconds)

    async def _run_claimed(self, claimed: ClaimedJob) -> None:
        job = claimed.job
        job.attempt_count += 1
        started = time.monotonic()

        logger.info(
            "Processing email job",
            job_id=job.id,
            kind=job.kind,
            user_id=job.user.id,
            week_number=job.week_number,
            attempt=job.attempt_count,
        )

        try:
            if self._handler is None:
                raise JobQueueError("No job handler configured", operation="process")
            await self._handler(job)

        except asyncio.CancelledError:
            logger.warning("Email job cancelled", job_id=job.id, attempt=job.attempt_count)
            raise

        except Exception as e:
            job.last_error = f"{type(e).__name__}: {e}"
            await self._handle_failure(claimed)

        else:
            job.last_error = None
            await self._record_completed(claimed)
            logger.info(
                "Email job completed",
                job_id=job.id,
                kind=job.kind,
                user_id=job.user.id,
                attempt=job.attempt_count,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )

    async def _handle_failure(self, claimed: ClaimedJob) -> None:
        job = claimed.job

        if self.retry_policy.should_retry(job.attempt_count):
            delay = self.retry_policy.backoff_seconds(job.attempt_count)
            logger.warning(
                "Email job failed, retrying with backoff",
                job_id=job.id,
                kind=job.kind,
                user_id=job.user.id,
                attempt=job.attempt_count,
                max_attempts=self.retry_policy.max_attempts,
                delay_seconds=delay,
                error=job.last_error,
            )
            await self._schedule_retry(claimed, delay)
            return

        logger.error(
            "Email job permanently failed",
            job_id=job.id,
            kind=job.kind,
            user_id=job.user.id,
            week_number=job.week_number,
            attempts=job.attempt_count,
            error=job.last_error,
        )
        await self._move_to_failed(claimed)

    # ------------------------------------------------------------------
    # Observability and lifecycle
    # ------------------------------------------------------------------

    async def get_status(self) -> dict[str, Any]:
        counts = await self._counts()
        return {
            "backend": self.backend_name,
            "pending": counts.get("pending", 0),
            "active": self.active_count,
            "completed": counts.get("completed", 0),
            "failed": counts.get("failed", 0),
            "delayed": counts.get("delayed", 0),
            # Oldest failed jobs beyond this many are evicted
            "failed_retention": self.keep_failed,
            "running": self.is_running,
            "accepting_jobs": not self._closing,
            "rate_limit_usage": self._rate_limiter.current_usage(),
        }

    async def get_failed_jobs(self, limit: int = 20) -> list[dict[str, Any]]:
        jobs = await self._failed_jobs(limit)
        return [
            {
                "job_id": job.id,
                "kind": job.kind,
                "user_id": job.user.id,
                "week_number": job.week_number,
                "attempts": job.attempt_count,
                "error": job.last_error,
            }
            for job in jobs
        ]

    async def health_check(self) -> dict[str, Any]:
        healthy = (self.is_running or not self._started) and not self._closing
        return {
            "healthy": healthy,
            "service": "email_queue",
            "backend": self.backend_name,
            "running": self.is_running,
            "accepting_jobs": not self._closing,
        }

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting jobs, let claimed jobs finish, then release resources."""
        if self._closing:
            return

        self._closing = True
        self._wakeup.set()
        timeout = self.shutdown_timeout_seconds if timeout is None else timeout

        logger.info("Email queue shutting down", in_flight=len(self._in_flight), timeout=timeout)

        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task

        if self._in_flight:
            _, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
            if pending:
                logger.warning("Cancelling email jobs that did not drain", count=len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        await self._close_backend()
        logger.info("Email queue shut down", backend=self.backend_name)

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    async def _push(self, job: EmailJob) -> None:
        raise NotImplementedError

    async def _claim(self) -> ClaimedJob | None:
        raise NotImplementedError

    async def _record_completed(self, claimed: ClaimedJob) -> None:
        raise NotImplementedError

    async def _schedule_retry(self, claimed: ClaimedJob, delay_seconds: float) -> None:
        raise NotImplementedError

    async def _move_to_failed(self, claimed: ClaimedJob) -> None:
        raise NotImplementedError

    async def _counts(self) -> dict[str, int]:
        raise NotImplementedError

    async def _failed_jobs(self, limit: int) -> list[EmailJob]:
        return []

    async def _recover(self) -> int:
        return 0

    async def _close_backend(self) -> None:
        return None

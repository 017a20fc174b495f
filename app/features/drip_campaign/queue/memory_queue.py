"""
In-process email queue for single-instance deployments and tests.

Jobs do not survive a restart; use the Redis backend where that matters.
"""

import heapq
import itertools
import time
from collections import deque

from app.features.drip_campaign.domain import EmailJob, utcnow
from app.infrastructure.observability.logging import get_logger

from .base import BaseJobQueue, ClaimedJob

logger = get_logger(__name__)


class InMemoryJobQueue(BaseJobQueue):
    backend_name = "memory"

    def __init__(self, *args, clock=time.monotonic, **kwargs):
        super().__init__(*args, **kwargs)
        self._clock = clock
        self._sequence = itertools.count()
        # (-priority, seq, job): highest priority first, FIFO within a priority
        self._ready: list[tuple[int, int, EmailJob]] = []
        # (ready_at, seq, job)
        self._delayed: list[tuple[float, int, EmailJob]] = []
        self._completed: deque[dict] = deque(maxlen=self.keep_completed)
        self._failed: deque[EmailJob] = deque(maxlen=self.keep_failed)

    async def _push(self, job: EmailJob) -> None:
        heapq.heappush(self._ready, (-job.priority, next(self._sequence), job))

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, (-job.priority, next(self._sequence), job))

    async def _claim(self) -> ClaimedJob | None:
        self._promote_due()
        if not self._ready:
            return None
        _, _, job = heapq.heappop(self._ready)
        return ClaimedJob(job=job)

    async def _record_completed(self, claimed: ClaimedJob) -> None:
        job = claimed.job
        self._completed.append(
            {
                "job_id": job.id,
                "kind": job.kind,
                "user_id": job.user.id,
                "week_number": job.week_number,
                "attempts": job.attempt_count,
                "completed_at": utcnow().isoformat(),
            }
        )

    async def _schedule_retry(self, claimed: ClaimedJob, delay_seconds: float) -> None:
        ready_at = self._clock() + delay_seconds
        heapq.heappush(self._delayed, (ready_at, next(self._sequence), claimed.job))

    async def _move_to_failed(self, claimed: ClaimedJob) -> None:
        if len(self._failed) == self._failed.maxlen:
            logger.error(
                "Failed email job list full, evicting oldest entry",
                evicted_job_id=self._failed[0].id,
                evicted_user_id=self._failed[0].user.id,
                keep_failed=self.keep_failed,
            )
        self._failed.append(claimed.job)

    async def _counts(self) -> dict[str, int]:
        self._promote_due()
        return {
            "pending": len(self._ready),
            "delayed": len(self._delayed),
            "completed": len(self._completed),
            "failed": len(self._failed),
        }

    async def _failed_jobs(self, limit: int) -> list[EmailJob]:
        return list(self._failed)[-limit:][::-1]

    async def _close_backend(self) -> None:
        dropped = len(self._ready) + len(self._delayed)
        if dropped:
            logger.warning("In-memory email jobs dropped on shutdown", count=dropped)

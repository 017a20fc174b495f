"""
Redis-backed email queue for deployments that need jobs to survive restarts.

Layout (all keys share a prefix):
    <prefix>:welcome    list, ready welcome jobs (polled first)
    <prefix>:weekly     list, ready weekly jobs
    <prefix>:inflight   list, jobs claimed by a worker and not yet acked
    <prefix>:delayed    sorted set, retries scored by their ready epoch
    <prefix>:completed  capped list of completion summaries
    <prefix>:failed     capped list of jobs that exhausted their attempts

Claims move jobs atomically into the in-flight list, so a crashed worker
leaves them recoverable. Recovery on start assumes a single consumer process.
"""

import json
import time
from typing import Any

from pydantic import ValidationError

from app.features.drip_campaign.domain import (
    EmailJob,
    deserialize_job,
    serialize_job,
    utcnow,
)
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import FastRedisClient

from .base import BaseJobQueue, ClaimedJob, JobQueueError

logger = get_logger(__name__)

DEFAULT_KEY_PREFIX = "drip:queue"


class RedisJobQueue(BaseJobQueue):
    backend_name = "redis"

    def __init__(
        self,
        redis_client: FastRedisClient,
        *args,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        close_client: bool = False,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.redis = redis_client
        self._close_client = close_client
        self.welcome_key = f"{key_prefix}:welcome"
        self.weekly_key = f"{key_prefix}:weekly"
        self.inflight_key = f"{key_prefix}:inflight"
        self.delayed_key = f"{key_prefix}:delayed"
        self.completed_key = f"{key_prefix}:completed"
        self.failed_key = f"{key_prefix}:failed"

    def _ready_key(self, job: EmailJob) -> str:
        return self.welcome_key if job.kind == "welcome" else self.weekly_key

    async def _push(self, job: EmailJob) -> None:
        pushed = await self.redis.push_to_list(self._ready_key(job), serialize_job(job))
        if not pushed:
            raise JobQueueError(f"Failed to store email job {job.id} in Redis", operation="enqueue")

    async def _promote_delayed(self) -> None:
        for payload in await self.redis.promote_due(self.delayed_key, time.time()):
            try:
                job = deserialize_job(payload)
            except ValidationError as e:
                logger.error("Dropping unreadable delayed email job", error=str(e))
                await self.redis.push_and_trim(self.failed_key, payload, self.keep_failed)
                continue
            # Retries go to the consuming end so they run before newer work
            await self.redis.push_to_list(self._ready_key(job), payload, left=False)

    async def _claim(self) -> ClaimedJob | None:
        await self._promote_delayed()

        for key in (self.welcome_key, self.weekly_key):
            payload = await self.redis.pop_to_inflight(key, self.inflight_key)
            if payload is None:
                continue

            try:
                job = deserialize_job(payload)
            except ValidationError as e:
                logger.error("Unreadable email job moved to failed list", key=key, error=str(e))
                await self.redis.finish_from_inflight(
                    self.inflight_key, self.failed_key, payload, payload, self.keep_failed
                )
                continue

            return ClaimedJob(job=job, receipt=payload)

        return None

    async def _record_completed(self, claimed: ClaimedJob) -> None:
        job = claimed.job
        summary = json.dumps(
            {
                "job_id": job.id,
                "kind": job.kind,
                "user_id": job.user.id,
                "week_number": job.week_number,
                "attempts": job.attempt_count,
                "completed_at": utcnow().isoformat(),
            }
        )
        ok = await self.redis.finish_from_inflight(
            self.inflight_key, self.completed_key, claimed.receipt, summary, self.keep_completed
        )
        if not ok:
            logger.error("Failed to ack completed email job", job_id=job.id)

    async def _schedule_retry(self, claimed: ClaimedJob, delay_seconds: float) -> None:
        ok = await self.redis.delay_from_inflight(
            self.inflight_key,
            self.delayed_key,
            claimed.receipt,
            serialize_job(claimed.job),
            time.time() + delay_seconds,
        )
        if not ok:
            logger.error(
                "Failed to schedule email job retry, job stays in flight",
                job_id=claimed.job.id,
            )

    async def _move_to_failed(self, claimed: ClaimedJob) -> None:
        if await self.redis.list_length(self.failed_key) >= self.keep_failed:
            logger.error(
                "Failed email job list full, evicting oldest entry",
                job_id=claimed.job.id,
                keep_failed=self.keep_failed,
            )
        ok = await self.redis.finish_from_inflight(
            self.inflight_key,
            self.failed_key,
            claimed.receipt,
            serialize_job(claimed.job),
            self.keep_failed,
        )
        if not ok:
            logger.error("Failed to record permanently failed email job", job_id=claimed.job.id)

    async def _counts(self) -> dict[str, int]:
        welcome = await self.redis.list_length(self.welcome_key)
        weekly = await self.redis.list_length(self.weekly_key)
        return {
            "pending": welcome + weekly,
            "delayed": await self.redis.sorted_set_size(self.delayed_key),
            "completed": await self.redis.list_length(self.completed_key),
            "failed": await self.redis.list_length(self.failed_key),
        }

    async def _failed_jobs(self, limit: int) -> list[EmailJob]:
        jobs = []
        for payload in await self.redis.list_range(self.failed_key, 0, limit - 1):
            try:
                jobs.append(deserialize_job(payload))
            except ValidationError:
                continue
        return jobs

    async def _recover(self) -> int:
        recovered = 0
        for payload in await self.redis.list_range(self.inflight_key):
            try:
                destination = self._ready_key(deserialize_job(payload))
            except ValidationError as e:
                logger.error("Unreadable in-flight email job moved to failed list", error=str(e))
                await self.redis.finish_from_inflight(
                    self.inflight_key, self.failed_key, payload, payload, self.keep_failed
                )
                continue

            if await self.redis.requeue_from_inflight(self.inflight_key, destination, payload):
                recovered += 1
        return recovered

    async def health_check(self) -> dict[str, Any]:
        health = await super().health_check()
        if not await self.redis.ping():
            health["healthy"] = False
            health["error"] = "Redis ping failed"
        return health

    async def _close_backend(self) -> None:
        if self._close_client:
            await self.redis.close()

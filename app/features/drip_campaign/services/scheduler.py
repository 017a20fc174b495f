"""
Hourly weekly-email scheduler.

Each tick selects the users whose local send hour is now and enqueues one
job per user. Scheduled ticks and the admin "trigger now" share the same
batch method and the same lock, so two batches never run at once.
"""

import asyncio
import contextlib
from datetime import datetime, timedelta

from app.db.helpers import DatabaseError
from app.features.drip_campaign.domain import (
    BatchResult,
    DripUser,
    WeeklyEmailJob,
    WelcomeEmailJob,
    utcnow,
)
from app.features.drip_campaign.queue import JobQueueError, QueueClosedError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SchedulerError(Exception):
    """Base class for admin scheduling failures."""


class UserNotFoundError(SchedulerError):
    """Raised when an admin operation targets a user that does not exist."""


class ResendNotAllowedError(SchedulerError):
    """Raised when a manual resend is requested for an inactive user."""


def seconds_until_next_hour(now: datetime) -> float:
    next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return max((next_hour - now).total_seconds(), 0.0)


def next_job_for(user: DripUser) -> WelcomeEmailJob | WeeklyEmailJob:
    """The job that moves a user one step forward in the program."""
    if user.program_week == 0:
        # Welcome never went out (for example it exhausted its retries)
        return WelcomeEmailJob(user=user)
    return WeeklyEmailJob(user=user, week_number=user.next_week)


class WeeklyEmailScheduler:
    """Drives eligibility selection and enqueues weekly jobs."""

    def __init__(self, selector, queue, users, *, clock=utcnow):
        self.selector = selector
        self.queue = queue
        self.users = users
        self._clock = clock
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self.last_result: BatchResult | None = None

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def process_weekly_batch(self, now: datetime | None = None) -> BatchResult:
        """Run one batch, or return a skipped result if another batch holds the lock."""
        if self._lock.locked():
            logger.info("Weekly batch already in progress, skipping")
            return BatchResult(skipped=True, reason="already_running")

        async with self._lock:
            result = await self._run_batch(now or self._clock())
            self.last_result = result
            return result

    async def _run_batch(self, now: datetime) -> BatchResult:
        result = BatchResult(started_at=now)

        try:
            users = await self.selector.select_users_due_for_email(now)
        except DatabaseError as e:
            logger.error(
                "Store unavailable, skipping weekly batch",
                error=str(e),
                operation=e.operation,
            )
            result.skipped = True
            result.reason = "store_unavailable"
            return result

        for user in users:
            result.processed += 1

            if not user.goals:
                logger.error("User has no goals set, skipping weekly email", user_id=user.id)
                continue

            try:
                await self.queue.enqueue(next_job_for(user))
                result.queued += 1
            except QueueClosedError:
                result.errors += 1
            except JobQueueError as e:
                result.errors += 1
                logger.error("Failed to enqueue weekly email", user_id=user.id, error=str(e))

        logger.info("Weekly batch complete", **result.to_dict())
        return result

    async def trigger_now(self) -> BatchResult:
        """Administrative trigger; identical to a scheduled tick."""
        logger.info("Weekly batch triggered manually")
        return await self.process_weekly_batch()

    async def resend_to_user(self, user_id: int) -> str:
        """
        Enqueue a fresh email for the user's current week.

        Every call creates a new email record and never advances progress.
        A user who never received their welcome simply gets it enqueued.
        """
        user = await self.users.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        if not user.is_active:
            raise ResendNotAllowedError(f"User {user_id} is inactive")

        if user.program_week == 0:
            job = WelcomeEmailJob(user=user)
        elif user.program_week == 1:
            job = WelcomeEmailJob(user=user, resend=True)
        else:
            job = WeeklyEmailJob(user=user, week_number=user.program_week, resend=True)

        job_id = await self.queue.enqueue(job)
        logger.info(
            "Manual resend enqueued",
            user_id=user_id,
            week_number=job.week_number,
            job_id=job_id,
        )
        return job_id

    # ------------------------------------------------------------------
    # Hourly loop
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        """Run a batch at the top of every hour until cancelled."""
        logger.info("Weekly email scheduler started")

        while True:
            await asyncio.sleep(seconds_until_next_hour(self._clock()))
            try:
                await self.process_weekly_batch()
            except Exception as e:
                logger.error(
                    "Error in weekly email scheduler", error=str(e), error_type=type(e).__name__
                )

    def start(self) -> None:
        if self.is_running:
            logger.warning("Weekly email scheduler already running")
            return
        self._task = asyncio.create_task(self.run_forever(), name="weekly-email-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Weekly email scheduler stopped")

    def get_status(self) -> dict:
        return {
            "running": self.is_running,
            "processing": self.is_processing,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_run_at": self.last_result.started_at.isoformat() if self.last_result else None,
        }

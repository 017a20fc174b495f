"""
Per-job email delivery pipeline.

    generate content -> persist pending record -> transmit -> persist outcome

The pending record is written before anything leaves the process, so a
failed or interrupted send always leaves the generated content on record.
Failures are raised back to the email queue, which retries the whole job
(fresh content, fresh record) under its backoff policy. Once the provider
has accepted a message, a retry only records the outcome and never sends again.
"""

import asyncio
from collections.abc import Callable
from typing import assert_never

from app.config import settings
from app.db.helpers import DatabaseError
from app.features.drip_campaign.domain import (
    STATUS_SENT,
    WELCOME_WEEK,
    CoachingContent,
    DripUser,
    EmailJob,
    EngagementLevel,
    TransmissionResult,
    WeeklyEmailJob,
    WelcomeEmailJob,
)
from app.infrastructure.observability.logging import bind_job_context, get_logger
from app.services.email_templates import (
    WELCOME_SUBJECT,
    render_weekly_email,
    render_welcome_email,
)

from .engagement import calculate_engagement_level

logger = get_logger(__name__)

FIRST_PREVIOUS_ACTION = "Starting your leadership journey"


class EmailDeliveryError(Exception):
    """A job could not be delivered on this attempt; the queue may retry it."""

    def __init__(
        self,
        message: str,
        user_id: int | None = None,
        week_number: int | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.user_id = user_id
        self.week_number = week_number
        self.recoverable = recoverable


class EmailDeliveryPipeline:
    """
    Runs one Welcome or Weekly job end to end.

    Collaborators are injected: `users` and `emails` are the repositories,
    `content_generator` exposes generate/generate_subject_line and
    `transmitter` exposes send.
    """

    def __init__(
        self,
        users,
        emails,
        content_generator,
        transmitter,
        *,
        content_timeout_seconds: float | None = None,
        transmission_timeout_seconds: float | None = None,
    ):
        self.users = users
        self.emails = emails
        self.content_generator = content_generator
        self.transmitter = transmitter
        self.content_timeout_seconds = (
            content_timeout_seconds or settings.CONTENT_GENERATION_TIMEOUT_SECONDS
        )
        self.transmission_timeout_seconds = (
            transmission_timeout_seconds or settings.MAIL_TRANSMISSION_TIMEOUT_SECONDS
        )

    async def process_job(self, job: EmailJob) -> None:
        with bind_job_context(job_id=job.id, job_kind=job.kind, attempt=job.attempt_count):
            if job.sent_record_id is not None:
                await self._reconcile_sent(job)
            elif isinstance(job, WelcomeEmailJob):
                await self._process_welcome(job)
            elif isinstance(job, WeeklyEmailJob):
                await self._process_weekly(job)
            else:
                assert_never(job)

    # ------------------------------------------------------------------
    # Job kinds
    # ------------------------------------------------------------------

    async def _process_welcome(self, job: WelcomeEmailJob) -> None:
        user = await self._load_user(job)
        if user is None:
            return

        if not job.resend and user.program_week >= WELCOME_WEEK:
            logger.warning(
                "Welcome email already delivered, skipping duplicate job",
                job_id=job.id,
                user_id=user.id,
                program_week=user.program_week,
            )
            return

        content = await self._generate(user, WELCOME_WEEK, FIRST_PREVIOUS_ACTION, "new_user")

        await self._deliver(
            job,
            user,
            WELCOME_WEEK,
            WELCOME_SUBJECT,
            content,
            lambda record_id: render_welcome_email(user, content, record_id),
        )

    async def _process_weekly(self, job: WeeklyEmailJob) -> None:
        user = await self._load_user(job)
        if user is None:
            return

        week = job.week_number
        if not job.resend:
            if week <= user.program_week:
                logger.warning(
                    "Week already delivered, skipping duplicate job",
                    job_id=job.id,
                    user_id=user.id,
                    week_number=week,
                    program_week=user.program_week,
                )
                return
            if week != user.next_week:
                logger.warning(
                    "Weekly email out of sequence, skipping",
                    job_id=job.id,
                    user_id=user.id,
                    week_number=week,
                    program_week=user.program_week,
                )
                return

        recent = await self.emails.get_recent_records(user.id, limit=3)
        # A resend of this week must build on the week before, not on itself
        previous_action = next(
            (r.action_item for r in recent if r.week_number < week and r.action_item),
            FIRST_PREVIOUS_ACTION,
        )
        engagement = calculate_engagement_level(recent)

        content = await self._generate(user, week, previous_action, engagement)
        subject = await self._with_timeout(
            self.content_generator.generate_subject_line(week, content.action_text),
            self.content_timeout_seconds,
            "Subject line generation timed out",
            user,
            week,
        )

        await self._deliver(
            job,
            user,
            week,
            subject,
            content,
            lambda record_id: render_weekly_email(user, week, content, record_id),
        )

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _load_user(self, job: EmailJob) -> DripUser | None:
        """Re-read the user so a stale job snapshot never drives delivery."""
        user = await self.users.get_user(job.user.id)

        if user is None:
            logger.warning("User no longer exists, dropping email job", job_id=job.id, user_id=job.user.id)
            return None
        if not user.is_active:
            logger.info("User inactive, dropping email job", job_id=job.id, user_id=user.id)
            return None
        if not user.goals:
            logger.error("User has no goals set, dropping email job", job_id=job.id, user_id=user.id)
            return None
        return user

    async def _with_timeout(self, awaitable, timeout: float, message: str, user: DripUser, week: int):
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except TimeoutError as e:
            raise EmailDeliveryError(message, user_id=user.id, week_number=week) from e

    async def _generate(
        self,
        user: DripUser,
        week: int,
        previous_action: str,
        engagement: EngagementLevel,
    ) -> CoachingContent:
        content = await self._with_timeout(
            self.content_generator.generate(
                user.goals,
                week,
                previous_action,
                context=user.context,
                engagement_level=engagement,
            ),
            self.content_timeout_seconds,
            "Content generation timed out",
            user,
            week,
        )
        if content.is_fallback:
            logger.info("Using fallback coaching content", user_id=user.id, week_number=week)
        return content

    async def _deliver(
        self,
        job: EmailJob,
        user: DripUser,
        week: int,
        subject: str,
        content: CoachingContent,
        render: Callable[[int], str],
    ) -> None:
        record = await self.emails.create_pending_record(
            user.id,
            week,
            subject,
            f"{content.encouragement}\n\n{content.goal_connection}",
            content.action_text,
            exclusive=not job.resend,
            job_id=job.id,
        )
        if record is None:
            live = await self.emails.get_live_record(user.id, week)
            if live is not None and live.delivery_status == STATUS_SENT:
                logger.warning(
                    "Email already sent for this week, skipping duplicate",
                    job_id=job.id,
                    user_id=user.id,
                    week_number=week,
                    record_id=live.id,
                )
                return
            # Another attempt holds the week; back off until it finishes or goes stale
            raise EmailDeliveryError(
                "Another delivery attempt for this week is still pending",
                user_id=user.id,
                week_number=week,
            )

        tags = {
            "type": job.kind,
            "user_id": str(user.id),
            "email_id": str(record.id),
            "week_number": str(week),
        }

        try:
            result = await asyncio.wait_for(
                self.transmitter.send(user.email, subject, render(record.id), tags=tags),
                timeout=self.transmission_timeout_seconds,
            )
        except TimeoutError:
            result = TransmissionResult(success=False, error="Mail transmission timed out")
        except Exception as e:
            await self.emails.mark_failed(record.id, f"{type(e).__name__}: {e}")
            raise EmailDeliveryError(
                f"Mail transmission raised: {e}", user_id=user.id, week_number=week
            ) from e

        if not result.success:
            error = result.error or "Mail transmitter reported failure"
            await self.emails.mark_failed(record.id, error)
            logger.warning(
                "Email transmission failed",
                job_id=job.id,
                user_id=user.id,
                week_number=week,
                record_id=record.id,
                error=error,
            )
            raise EmailDeliveryError(error, user_id=user.id, week_number=week)

        job.sent_record_id = record.id
        job.provider_message_id = result.provider_message_id
        advanced = await self._record_sent(job, user.id, week)

        logger.info(
            "Email delivered",
            job_id=job.id,
            kind=job.kind,
            user_id=user.id,
            week_number=week,
            record_id=record.id,
            provider_message_id=result.provider_message_id,
            resend=job.resend,
            program_week_advanced=advanced,
        )

    async def _record_sent(self, job: EmailJob, user_id: int, week: int) -> bool:
        """
        Persist a confirmed send. On failure the job keeps its sent markers, so
        the queue's retry reconciles this record instead of sending again.
        """
        try:
            advanced = await self.emails.mark_sent(
                job.sent_record_id,
                job.provider_message_id,
                user_id=user_id,
                advance_to_week=None if job.resend else week,
            )
        except DatabaseError as e:
            logger.error(
                "Email sent but outcome not recorded, will reconcile on retry",
                job_id=job.id,
                user_id=user_id,
                week_number=week,
                record_id=job.sent_record_id,
                provider_message_id=job.provider_message_id,
                error=str(e),
            )
            raise EmailDeliveryError(
                f"Failed to record sent email: {e}", user_id=user_id, week_number=week
            ) from e

        job.sent_record_id = None
        job.provider_message_id = None
        return advanced

    async def _reconcile_sent(self, job: EmailJob) -> None:
        record_id = job.sent_record_id
        advanced = await self._record_sent(job, job.user.id, job.week_number)
        logger.info(
            "Reconciled previously sent email",
            job_id=job.id,
            user_id=job.user.id,
            week_number=job.week_number,
            record_id=record_id,
            program_week_advanced=advanced,
        )

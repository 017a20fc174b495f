"""
Wiring for the drip campaign runtime.

Both the API process and the standalone worker build the same graph of
collaborators here: repositories, content generator, transmitter, queue,
delivery pipeline, eligibility selector, scheduler, enrollment and
monitoring. Anything can be swapped by passing it in, which is how the
tests run the whole graph against in-memory fakes.
"""

from dataclasses import dataclass

from app.config import settings
from app.features.drip_campaign.queue import (
    BaseJobQueue,
    InMemoryJobQueue,
    RedisJobQueue,
    RetryPolicy,
)
from app.features.drip_campaign.repository import drip_user_repository, email_record_repository
from app.features.drip_campaign.services import (
    EligibilitySelector,
    EmailDeliveryPipeline,
    EnrollmentService,
    MonitoringService,
    WeeklyEmailScheduler,
)
from app.infrastructure.observability.logging import get_logger
from app.services.openai_service import openai_service
from app.services.redis_client import fast_redis
from app.services.resend_service import resend_service

logger = get_logger(__name__)


@dataclass
class DripRuntime:
    users: object
    emails: object
    content_generator: object
    transmitter: object
    queue: BaseJobQueue
    pipeline: EmailDeliveryPipeline
    selector: EligibilitySelector
    scheduler: WeeklyEmailScheduler
    enrollment: EnrollmentService
    monitoring: MonitoringService

    async def start(self, *, run_scheduler: bool = True) -> None:
        await self.queue.start()
        if run_scheduler:
            self.scheduler.start()

    async def stop(self) -> None:
        """Stop scheduling first so nothing new lands in a draining queue."""
        await self.scheduler.stop()
        await self.queue.shutdown()


def build_queue(backend: str | None = None, retry_policy: RetryPolicy | None = None) -> BaseJobQueue:
    backend = backend or settings.EMAIL_QUEUE_BACKEND
    policy = retry_policy or RetryPolicy.from_settings()
    config = settings.get_queue_config()

    if backend == "redis":
        return RedisJobQueue(fast_redis, retry_policy=policy, **config)
    if backend == "memory":
        return InMemoryJobQueue(retry_policy=policy, **config)
    raise ValueError(f"Unknown email queue backend '{backend}'")


def build_drip_runtime(
    *,
    users=None,
    emails=None,
    content_generator=None,
    transmitter=None,
    queue: BaseJobQueue | None = None,
    expect_scheduler: bool | None = None,
) -> DripRuntime:
    users = users or drip_user_repository
    emails = emails or email_record_repository
    content_generator = content_generator or openai_service
    transmitter = transmitter or resend_service
    queue = queue or build_queue()

    pipeline = EmailDeliveryPipeline(users, emails, content_generator, transmitter)
    queue.set_handler(pipeline.process_job)

    selector = EligibilitySelector(users, emails)
    scheduler = WeeklyEmailScheduler(selector, queue, users)
    enrollment = EnrollmentService(users, queue)
    monitoring = MonitoringService(
        users,
        emails,
        queue,
        scheduler=scheduler,
        transmitter=transmitter,
        expect_scheduler=(
            settings.SCHEDULER_ENABLED if expect_scheduler is None else expect_scheduler
        ),
    )

    logger.info(
        "Drip runtime built",
        queue_backend=queue.backend_name,
        transmitter_configured=getattr(transmitter, "configured", True),
    )

    return DripRuntime(
        users=users,
        emails=emails,
        content_generator=content_generator,
        transmitter=transmitter,
        queue=queue,
        pipeline=pipeline,
        selector=selector,
        scheduler=scheduler,
        enrollment=enrollment,
        monitoring=monitoring,
    )

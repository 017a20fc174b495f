"""
Signup: create the user, then hand the welcome email to the queue.

Delivery is fully decoupled from the request; queue problems are logged and
never turn a successful signup into an error.
"""

import psycopg

from app.db.helpers import DatabaseError
from app.features.drip_campaign.domain import DripUser, LeadershipContext
from app.features.drip_campaign.queue import JobQueueError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class UserAlreadyExistsError(Exception):
    """Raised when the email address is already enrolled."""


class EnrollmentService:
    def __init__(self, users, queue):
        self.users = users
        self.queue = queue

    async def signup(
        self,
        email: str,
        timezone: str,
        goals: list[str],
        context: LeadershipContext | None = None,
    ) -> tuple[DripUser, bool]:
        """Returns (user, welcome_queued)."""
        if await self.users.get_user_by_email(email):
            raise UserAlreadyExistsError(email)

        try:
            user = await self.users.create_user(email, timezone, goals, context)
        except DatabaseError as e:
            # Lost a race with a concurrent signup for the same address
            if isinstance(e.__cause__, psycopg.errors.UniqueViolation):
                raise UserAlreadyExistsError(email) from e
            raise

        try:
            await self.queue.enqueue_welcome(user)
        except JobQueueError as e:
            logger.error(
                "Failed to enqueue welcome email, user stays at week 0",
                user_id=user.id,
                error=str(e),
            )
            return user, False

        return user, True

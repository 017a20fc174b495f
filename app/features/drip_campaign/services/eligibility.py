"""
Eligibility selection for the weekly email batch.

A user is due when the current instant falls inside their local send hour
(Monday 09:00 by default) and nothing has been sent, or is in flight, since
the start of their local week. The window is strict: a user whose hour is
missed (for example during downtime) waits until the following week.
"""

from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.config import settings
from app.features.drip_campaign.domain import DripUser
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def resolve_timezone(name: str | None, fallback: str = "UTC") -> tuple[ZoneInfo, bool]:
    """Return (zone, valid). Unknown or malformed names resolve to the fallback zone."""
    try:
        if not name:
            raise ValueError("empty timezone")
        return ZoneInfo(name), True
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(fallback), False


def start_of_local_week(local_now: datetime) -> datetime:
    """Monday 00:00 of the week containing local_now, in the same zone."""
    monday = (local_now - timedelta(days=local_now.weekday())).date()
    return datetime.combine(monday, time.min, tzinfo=local_now.tzinfo)


class EligibilitySelector:
    """Decides which users are due for their next weekly email at a given instant."""

    def __init__(
        self,
        users,
        emails,
        *,
        send_weekday: int | None = None,
        send_hour: int | None = None,
        server_timezone: str | None = None,
    ):
        self.users = users
        self.emails = emails
        self.send_weekday = settings.SEND_WEEKDAY if send_weekday is None else send_weekday
        self.send_hour = settings.SEND_HOUR if send_hour is None else send_hour
        self.server_timezone = server_timezone or settings.SERVER_TIMEZONE

    def local_time(self, user: DripUser, now: datetime) -> datetime:
        zone, valid = resolve_timezone(user.timezone, self.server_timezone)
        if not valid:
            logger.warning(
                "Invalid user timezone, evaluating send window in server time",
                user_id=user.id,
                timezone=user.timezone,
                server_timezone=self.server_timezone,
            )
        return now.astimezone(zone)

    def in_send_window(self, local_now: datetime) -> bool:
        return local_now.weekday() == self.send_weekday and local_now.hour == self.send_hour

    async def is_due(self, user: DripUser, now: datetime) -> bool:
        if not user.is_active or user.has_completed_program:
            return False

        local_now = self.local_time(user, now)
        if not self.in_send_window(local_now):
            return False

        week_start = start_of_local_week(local_now)

        if user.last_email_sent_at is not None and user.last_email_sent_at >= week_start:
            logger.debug("User already emailed this week", user_id=user.id)
            return False

        if await self.emails.has_email_since(user.id, week_start):
            logger.debug("Email record exists for this week", user_id=user.id)
            return False

        return True

    async def select_users_due_for_email(self, now: datetime) -> list[DripUser]:
        """
        Users due for their next weekly email at `now`.

        Read-only: calling it twice without sends in between yields the same set.
        """
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)

        candidates = await self.users.get_candidate_users()
        due = [user for user in candidates if await self.is_due(user, now)]

        logger.info(
            "Eligibility selection complete",
            candidates=len(candidates),
            due=len(due),
            now=now.isoformat(),
        )
        return due

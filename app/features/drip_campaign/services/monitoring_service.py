"""
Admin-facing health and statistics for the drip campaign.
"""

import time
from datetime import datetime, time as dt_time
from typing import Any, Literal

from app.db.helpers import DatabaseError
from app.features.drip_campaign.domain import utcnow
from app.infrastructure.observability.logging import get_logger, log_health_check

logger = get_logger(__name__)

HealthStatus = Literal["healthy", "degraded", "unhealthy"]


class MonitoringService:
    """
    Aggregates store connectivity, queue liveness and collaborator
    configuration into a single healthy/degraded/unhealthy status.
    """

    def __init__(
        self, users, emails, queue, scheduler=None, transmitter=None, expect_scheduler=False
    ):
        self.users = users
        self.emails = emails
        self.queue = queue
        self.scheduler = scheduler
        self.expect_scheduler = expect_scheduler
        self.transmitter = transmitter
        self.started_at = time.monotonic()

    async def _check_database(self) -> tuple[bool, str | None]:
        start = time.monotonic()
        try:
            healthy = await self.users.ping()
            error = None if healthy else "unexpected ping result"
        except DatabaseError as e:
            healthy, error = False, str(e)
        log_health_check("database", healthy, round((time.monotonic() - start) * 1000, 2), error)
        return healthy, error

    async def get_health_status(self) -> dict[str, Any]:
        db_healthy, db_error = await self._check_database()
        queue_health = await self.queue.health_check()
        queue_status = await self.queue.get_status()

        services = {"database": db_healthy, "email_queue": queue_health["healthy"]}

        status: HealthStatus = "healthy"
        warnings = []

        if not all(services.values()):
            status = "unhealthy"
        else:
            if self.transmitter is not None and not getattr(self.transmitter, "configured", True):
                warnings.append("Mail transmitter not configured, emails will fail")
            scheduler_down = self.scheduler is not None and not self.scheduler.is_running
            if self.expect_scheduler and scheduler_down:
                warnings.append("Weekly scheduler not running in this process")
            if warnings:
                status = "degraded"

        result: dict[str, Any] = {
            "status": status,
            "timestamp": utcnow().isoformat(),
            "uptime_seconds": round(time.monotonic() - self.started_at, 1),
            "services": services,
            "queue": queue_status,
        }
        if db_error:
            result["database_error"] = db_error
        if warnings:
            result["warnings"] = warnings
        if self.scheduler is not None:
            result["scheduler"] = self.scheduler.get_status()

        if status == "unhealthy":
            logger.error("Drip health check failed", services=services)
        elif status == "degraded":
            logger.warning("Drip health degraded", warnings=warnings)

        return result

    async def get_stats(self) -> dict[str, Any]:
        """User totals, today's sends and email counts by delivery status."""
        user_stats = await self.users.get_stats()
        now = utcnow()
        midnight = datetime.combine(now.date(), dt_time.min, tzinfo=now.tzinfo)
        sent_today = await self.emails.count_sent_since(midnight)
        by_status = await self.emails.count_by_status()

        return {
            "total_users": user_stats["total_users"],
            "active_users": user_stats["active_users"],
            "emails_sent_today": sent_today,
            "completion_rate": user_stats["completion_rate"],
            "emails_by_status": by_status,
        }

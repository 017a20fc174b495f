import pytest

from app.db.helpers import DatabaseError
from app.features.drip_campaign.domain import STATUS_FAILED, STATUS_SENT, utcnow
from app.features.drip_campaign.services import MonitoringService


@pytest.mark.asyncio
async def test_healthy_when_store_and_queue_are_up(users, emails, queue, transmitter):
    monitoring = MonitoringService(users, emails, queue, transmitter=transmitter)

    health = await monitoring.get_health_status()

    assert health["status"] == "healthy"
    assert health["services"] == {"database": True, "email_queue": True}
    assert health["queue"]["backend"] == "memory"


@pytest.mark.asyncio
async def test_unhealthy_when_store_is_down(users, emails, queue):
    users.fail_with = DatabaseError("connection refused", operation="ping")
    monitoring = MonitoringService(users, emails, queue)

    health = await monitoring.get_health_status()

    assert health["status"] == "unhealthy"
    assert health["services"]["database"] is False
    assert "connection refused" in health["database_error"]


@pytest.mark.asyncio
async def test_degraded_when_transmitter_unconfigured(users, emails, queue):
    class UnconfiguredTransmitter:
        configured = False

    monitoring = MonitoringService(users, emails, queue, transmitter=UnconfiguredTransmitter())

    health = await monitoring.get_health_status()

    assert health["status"] == "degraded"
    assert health["warnings"]


@pytest.mark.asyncio
async def test_degraded_when_expected_scheduler_is_not_running(runtime):
    monitoring = MonitoringService(
        runtime.users,
        runtime.emails,
        runtime.queue,
        scheduler=runtime.scheduler,
        expect_scheduler=True,
    )

    health = await monitoring.get_health_status()

    assert health["status"] == "degraded"
    assert health["scheduler"]["running"] is False


@pytest.mark.asyncio
async def test_stats_report_users_and_email_counts(users, emails, queue):
    finished = users.add(program_week=12)
    users.add(program_week=3)
    users.add(program_week=1, is_active=False)
    emails.add(user_id=finished.id, week_number=12, delivery_status=STATUS_SENT, sent_at=utcnow())
    emails.add(user_id=finished.id, week_number=11, delivery_status=STATUS_FAILED)

    stats = await MonitoringService(users, emails, queue).get_stats()

    assert stats["total_users"] == 3
    assert stats["active_users"] == 2
    assert stats["emails_sent_today"] == 1
    assert stats["completion_rate"] == 33
    assert stats["emails_by_status"] == {"pending": 0, "sent": 1, "failed": 1}

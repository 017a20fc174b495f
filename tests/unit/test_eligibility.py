from datetime import UTC, datetime, timedelta

import pytest

from app.features.drip_campaign.domain import STATUS_FAILED, STATUS_PENDING, STATUS_SENT
from app.features.drip_campaign.services import (
    EligibilitySelector,
    resolve_timezone,
    start_of_local_week,
)

# Monday 2024-01-08 09:00 in New York (EST, UTC-5)
MONDAY_9AM_NEW_YORK = datetime(2024, 1, 8, 14, 0, tzinfo=UTC)


@pytest.fixture
def selector(users, emails):
    return EligibilitySelector(
        users, emails, send_weekday=0, send_hour=9, server_timezone="UTC"
    )


def test_resolve_timezone_falls_back_for_unknown_names():
    zone, valid = resolve_timezone("Mars/Olympus_Mons", "UTC")
    assert valid is False
    assert str(zone) == "UTC"

    zone, valid = resolve_timezone("America/New_York", "UTC")
    assert valid is True
    assert str(zone) == "America/New_York"


def test_start_of_local_week_is_monday_midnight():
    local = MONDAY_9AM_NEW_YORK.astimezone(resolve_timezone("America/New_York")[0])
    start = start_of_local_week(local + timedelta(days=3))

    assert start.weekday() == 0
    assert (start.hour, start.minute) == (0, 0)
    assert start.date() == local.date()


@pytest.mark.asyncio
async def test_user_due_exactly_in_local_send_hour(users, selector):
    user = users.add(timezone="America/New_York", program_week=1)

    due = await selector.select_users_due_for_email(MONDAY_9AM_NEW_YORK)
    assert [u.id for u in due] == [user.id]

    due = await selector.select_users_due_for_email(MONDAY_9AM_NEW_YORK + timedelta(minutes=59))
    assert [u.id for u in due] == [user.id]


@pytest.mark.asyncio
@pytest.mark.parametrize("offset_hours", [-1, 1])
async def test_user_not_due_outside_send_hour(users, selector, offset_hours):
    users.add(timezone="America/New_York", program_week=1)

    due = await selector.select_users_due_for_email(
        MONDAY_9AM_NEW_YORK + timedelta(hours=offset_hours)
    )
    assert due == []


@pytest.mark.asyncio
async def test_user_not_due_on_other_weekdays(users, selector):
    users.add(timezone="America/New_York", program_week=1)

    due = await selector.select_users_due_for_email(MONDAY_9AM_NEW_YORK + timedelta(days=1))
    assert due == []


@pytest.mark.asyncio
async def test_invalid_timezone_uses_server_timezone(users, selector):
    user = users.add(timezone="Not/AZone", program_week=3)

    # 09:00 UTC on the Monday
    due = await selector.select_users_due_for_email(datetime(2024, 1, 8, 9, 0, tzinfo=UTC))
    assert [u.id for u in due] == [user.id]

    due = await selector.select_users_due_for_email(MONDAY_9AM_NEW_YORK)
    assert due == []


@pytest.mark.asyncio
async def test_naive_now_is_treated_as_utc(users, selector):
    user = users.add(timezone="UTC", program_week=2)

    due = await selector.select_users_due_for_email(datetime(2024, 1, 8, 9, 30))
    assert [u.id for u in due] == [user.id]


@pytest.mark.asyncio
async def test_completed_and_inactive_users_are_never_due(users, selector):
    users.add(timezone="America/New_York", program_week=12)
    users.add(timezone="America/New_York", program_week=4, is_active=False)

    assert await selector.select_users_due_for_email(MONDAY_9AM_NEW_YORK) == []


@pytest.mark.asyncio
async def test_user_emailed_this_week_is_not_due(users, emails, selector):
    already_sent = users.add(
        timezone="America/New_York",
        program_week=2,
        last_email_sent_at=MONDAY_9AM_NEW_YORK - timedelta(hours=2),
    )
    in_flight = users.add(timezone="America/New_York", program_week=2)
    emails.add(
        user_id=in_flight.id,
        week_number=3,
        delivery_status=STATUS_PENDING,
        created_at=MONDAY_9AM_NEW_YORK - timedelta(minutes=5),
    )

    due = await selector.select_users_due_for_email(MONDAY_9AM_NEW_YORK)

    assert already_sent.id not in [u.id for u in due]
    assert in_flight.id not in [u.id for u in due]


@pytest.mark.asyncio
async def test_last_weeks_send_and_failed_attempts_do_not_block(users, emails, selector):
    user = users.add(
        timezone="America/New_York",
        program_week=2,
        last_email_sent_at=MONDAY_9AM_NEW_YORK - timedelta(days=7),
    )
    emails.add(
        user_id=user.id,
        week_number=2,
        delivery_status=STATUS_SENT,
        sent_at=MONDAY_9AM_NEW_YORK - timedelta(days=7),
        created_at=MONDAY_9AM_NEW_YORK - timedelta(days=7),
    )
    emails.add(
        user_id=user.id,
        week_number=3,
        delivery_status=STATUS_FAILED,
        created_at=MONDAY_9AM_NEW_YORK - timedelta(minutes=10),
    )

    due = await selector.select_users_due_for_email(MONDAY_9AM_NEW_YORK)
    assert [u.id for u in due] == [user.id]


@pytest.mark.asyncio
async def test_selection_is_idempotent_without_sends(users, selector):
    for _ in range(3):
        users.add(timezone="America/New_York", program_week=1)

    first = await selector.select_users_due_for_email(MONDAY_9AM_NEW_YORK)
    second = await selector.select_users_due_for_email(MONDAY_9AM_NEW_YORK)

    assert [u.id for u in first] == [u.id for u in second]
    assert len(first) == 3

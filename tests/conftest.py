import asyncio
import itertools
from datetime import timedelta

import psycopg
import pytest

from app.db.helpers import DatabaseError
from app.features.drip_campaign.domain import (
    PROGRAM_WEEKS,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    CoachingContent,
    DripUser,
    EmailRecord,
    GoalAction,
    LeadershipContext,
    TransmissionResult,
    utcnow,
)
from app.features.drip_campaign.queue import InMemoryJobQueue, RetryPolicy
from app.features.drip_campaign.repository import EmailRecordRepositoryError
from app.features.drip_campaign.runtime import build_drip_runtime
from app.features.drip_campaign.services import EmailDeliveryPipeline


class FakeUserRepository:
    """In-memory stand-in for DripUserRepository."""

    def __init__(self):
        self.users: dict[int, DripUser] = {}
        self._ids = itertools.count(1)
        self.fail_with: Exception | None = None

    def add(self, **fields) -> DripUser:
        fields.setdefault("email", f"user{len(self.users) + 1}@example.com")
        fields.setdefault("goals", ["Delegate more effectively"])
        user = DripUser(id=next(self._ids), created_at=utcnow(), **fields)
        self.users[user.id] = user
        return user.model_copy(deep=True)

    async def get_user(self, user_id: int) -> DripUser | None:
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def get_user_by_email(self, email: str) -> DripUser | None:
        match = next(
            (user for user in self.users.values() if user.email.lower() == email.lower()), None
        )
        # Yield after the read so concurrent signups can interleave as they would against a real store
        await asyncio.sleep(0)
        return match.model_copy(deep=True) if match else None

    async def create_user(self, email, timezone, goals, context=None) -> DripUser:
        if any(user.email.lower() == email.lower() for user in self.users.values()):
            try:
                raise psycopg.errors.UniqueViolation("duplicate key value violates unique constraint")
            except psycopg.Error as e:
                raise DatabaseError("Failed to create user", operation="create_user") from e
        return self.add(
            email=email,
            timezone=timezone,
            goals=goals,
            context=context or LeadershipContext(),
        )

    async def deactivate(self, user_id: int) -> DripUser | None:
        user = self.users.get(user_id)
        if user is None:
            return None
        user.is_active = False
        return user.model_copy(deep=True)

    async def get_candidate_users(self) -> list[DripUser]:
        if self.fail_with is not None:
            raise self.fail_with
        return [
            user.model_copy(deep=True)
            for user in self.users.values()
            if user.is_active and user.program_week < PROGRAM_WEEKS
        ]

    async def get_stats(self) -> dict:
        total = len(self.users)
        completed = sum(1 for user in self.users.values() if user.program_week >= PROGRAM_WEEKS)
        return {
            "total_users": total,
            "active_users": sum(1 for user in self.users.values() if user.is_active),
            "completed_users": completed,
            "completion_rate": round(completed / total * 100) if total else 0,
        }

    async def ping(self) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        return True


class FakeEmailRecordRepository:
    """In-memory stand-in for EmailRecordRepository, sharing the fake user store."""

    def __init__(self, users: FakeUserRepository):
        self.users = users
        self.records: dict[int, EmailRecord] = {}
        self.resend_ids: set[int] = set()
        self.mark_sent_failures: list[Exception] = []
        self._ids = itertools.count(1)

    def add(self, **fields) -> EmailRecord:
        fields.setdefault("created_at", utcnow())
        record = EmailRecord(id=next(self._ids), **fields)
        self.records[record.id] = record
        return record

    def for_user(self, user_id: int) -> list[EmailRecord]:
        return [record for record in self.records.values() if record.user_id == user_id]

    async def create_pending_record(
        self,
        user_id,
        week_number,
        subject,
        content,
        action_item,
        *,
        exclusive=True,
        job_id=None,
        stale_after_seconds=900,
    ) -> EmailRecord | None:
        if exclusive:
            stale_before = utcnow() - timedelta(seconds=stale_after_seconds)
            for record in self.scheduled(user_id, week_number):
                if record.delivery_status == STATUS_PENDING and (
                    record.created_at < stale_before or (job_id and record.job_id == job_id)
                ):
                    record.delivery_status = STATUS_FAILED
                    record.error_message = "abandoned pending attempt"
            if any(
                record.delivery_status in (STATUS_PENDING, STATUS_SENT)
                for record in self.scheduled(user_id, week_number)
            ):
                return None
        record = self.add(
            user_id=user_id,
            week_number=week_number,
            subject=subject,
            content=content,
            action_item=action_item,
            delivery_status=STATUS_PENDING,
            job_id=job_id,
        )
        if not exclusive:
            self.resend_ids.add(record.id)
        return record.model_copy()

    def scheduled(self, user_id, week_number) -> list[EmailRecord]:
        return [
            record
            for record in self.for_user(user_id)
            if record.week_number == week_number and record.id not in self.resend_ids
        ]

    async def get_live_record(self, user_id, week_number) -> EmailRecord | None:
        live = [
            record
            for record in self.scheduled(user_id, week_number)
            if record.delivery_status in (STATUS_PENDING, STATUS_SENT)
        ]
        return max(live, key=lambda record: record.id).model_copy() if live else None

    async def mark_sent(self, record_id, provider_message_id, *, user_id, advance_to_week) -> bool:
        if self.mark_sent_failures:
            raise self.mark_sent_failures.pop(0)
        record = self.records.get(record_id)
        if record is None:
            raise EmailRecordRepositoryError(f"Email record {record_id} not found", operation="mark_sent")
        now = utcnow()
        record.delivery_status = STATUS_SENT
        record.sent_at = now
        record.provider_message_id = provider_message_id
        record.error_message = None

        user = self.users.users[user_id]
        user.last_email_sent_at = now
        if advance_to_week is not None and user.program_week == advance_to_week - 1:
            user.program_week = advance_to_week
            return True
        return False

    async def mark_failed(self, record_id, error) -> None:
        record = self.records.get(record_id)
        if record and record.delivery_status == STATUS_PENDING:
            record.delivery_status = STATUS_FAILED
            record.error_message = error[:1000]

    async def has_email_since(self, user_id, since) -> bool:
        return any(
            (record.sent_at is not None and record.sent_at >= since)
            or (record.delivery_status == STATUS_PENDING and record.created_at >= since)
            for record in self.for_user(user_id)
        )

    async def get_recent_records(self, user_id, limit=3) -> list[EmailRecord]:
        sent = [record for record in self.for_user(user_id) if record.delivery_status == STATUS_SENT]
        sent.sort(key=lambda record: (record.sent_at, record.id), reverse=True)
        return [record.model_copy() for record in sent[:limit]]

    async def get_records_for_user(self, user_id) -> list[EmailRecord]:
        return [record.model_copy() for record in self.for_user(user_id)]

    def _by_message(self, provider_message_id):
        return [
            record
            for record in self.records.values()
            if record.provider_message_id == provider_message_id
        ]

    async def mark_delivered(self, provider_message_id) -> int:
        matched = [
            record
            for record in self._by_message(provider_message_id)
            if record.delivery_status == STATUS_PENDING
        ]
        for record in matched:
            record.delivery_status = STATUS_SENT
            record.sent_at = record.sent_at or utcnow()
        return len(matched)

    async def record_open(self, provider_message_id) -> int:
        matched = self._by_message(provider_message_id)
        for record in matched:
            record.opened_at = record.opened_at or utcnow()
        return len(matched)

    async def record_click(self, provider_message_id) -> int:
        matched = self._by_message(provider_message_id)
        for record in matched:
            record.click_count += 1
        return len(matched)

    async def mark_bounced(self, provider_message_id) -> int:
        matched = self._by_message(provider_message_id)
        for record in matched:
            record.delivery_status = STATUS_FAILED
            record.error_message = "bounced"
        return len(matched)

    async def track_open(self, record_id) -> int:
        record = self.records.get(record_id)
        if record is None:
            return 0
        record.opened_at = record.opened_at or utcnow()
        return 1

    async def track_click(self, record_id) -> int:
        record = self.records.get(record_id)
        if record is None:
            return 0
        record.click_count += 1
        return 1

    async def count_sent_since(self, since) -> int:
        return sum(
            1
            for record in self.records.values()
            if record.delivery_status == STATUS_SENT and record.sent_at and record.sent_at >= since
        )

    async def count_by_status(self) -> dict[str, int]:
        counts = {STATUS_PENDING: 0, STATUS_SENT: 0, STATUS_FAILED: 0}
        for record in self.records.values():
            counts[record.delivery_status] += 1
        return counts


class RecordingTransmitter:
    """Mail transmitter that records every send and replays scripted outcomes."""

    configured = True

    def __init__(self, outcomes=None):
        self.sent: list[dict] = []
        self.outcomes = list(outcomes or [])

    async def send(self, to_address, subject, html_body, tags=None) -> TransmissionResult:
        self.sent.append(
            {"to": to_address, "subject": subject, "html": html_body, "tags": tags or {}}
        )
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return TransmissionResult(success=True, provider_message_id=f"msg-{len(self.sent)}")


class ScriptedContentGenerator:
    """Content generator returning distinct, predictable content on every call."""

    def __init__(self):
        self.calls: list[dict] = []

    async def generate(
        self, goals, week_number, previous_action, context=None, engagement_level="new_user"
    ) -> CoachingContent:
        self.calls.append(
            {
                "goals": goals,
                "week_number": week_number,
                "previous_action": previous_action,
                "engagement_level": engagement_level,
            }
        )
        call = len(self.calls)
        return CoachingContent(
            encouragement=f"Keep going (call {call})",
            actions=[
                GoalAction(goal=goal, action=f"Week {week_number} action {call}") for goal in goals
            ],
            goal_connection="Each week builds on the last.",
        )

    async def generate_subject_line(self, week_number, action_text) -> str:
        return f"Week {week_number}: Test Challenge"


def make_queue(**overrides) -> InMemoryJobQueue:
    options = {
        "retry_policy": RetryPolicy(max_attempts=3, base_delay_seconds=0.01, max_delay_seconds=0.05),
        "concurrency": 3,
        "rate_limit_max": 100,
        "rate_limit_window_seconds": 1.0,
        "poll_interval_seconds": 0.01,
        "shutdown_timeout_seconds": 1.0,
    }
    options.update(overrides)
    return InMemoryJobQueue(**options)


async def wait_until_idle(queue, timeout: float = 3.0) -> dict:
    """Poll until nothing is pending, delayed or running on the queue."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        status = await queue.get_status()
        if status["pending"] == 0 and status["delayed"] == 0 and status["active"] == 0:
            return status
        if loop.time() > deadline:
            raise AssertionError(f"Queue did not go idle: {status}")
        await asyncio.sleep(0.01)


@pytest.fixture
def users():
    return FakeUserRepository()


@pytest.fixture
def emails(users):
    return FakeEmailRecordRepository(users)


@pytest.fixture
def transmitter():
    return RecordingTransmitter()


@pytest.fixture
def content_generator():
    return ScriptedContentGenerator()


@pytest.fixture
def pipeline(users, emails, content_generator, transmitter):
    return EmailDeliveryPipeline(
        users,
        emails,
        content_generator,
        transmitter,
        content_timeout_seconds=2,
        transmission_timeout_seconds=2,
    )


@pytest.fixture
def queue():
    return make_queue()


@pytest.fixture
def runtime(users, emails, content_generator, transmitter, queue):
    return build_drip_runtime(
        users=users,
        emails=emails,
        content_generator=content_generator,
        transmitter=transmitter,
        queue=queue,
        expect_scheduler=False,
    )


@pytest.fixture
def wait_idle():
    return wait_until_idle


@pytest.fixture
def queue_factory():
    return make_queue

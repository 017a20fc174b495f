"""
Domain models for the weekly drip campaign.

Users and email history rows are read from the store, jobs travel through
the email queue (and, for the durable tier, through Redis as JSON), and the
content/transmission result shapes are what the external collaborators hand
back to the delivery pipeline.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

PROGRAM_WEEKS = 12
WELCOME_WEEK = 1

DeliveryStatus = Literal["pending", "sent", "failed"]
STATUS_PENDING: DeliveryStatus = "pending"
STATUS_SENT: DeliveryStatus = "sent"
STATUS_FAILED: DeliveryStatus = "failed"

EngagementLevel = Literal[
    "new_user", "highly_engaged", "engaged", "moderately_engaged", "low_engagement"
]

# Higher runs first
WELCOME_PRIORITY = 10
WEEKLY_PRIORITY = 5


def utcnow() -> datetime:
    return datetime.now(UTC)


class LeadershipContext(BaseModel):
    """Optional personalization inputs collected at signup."""

    current_role: str | None = None
    team_size: str | None = None
    industry: str | None = None
    years_in_leadership: int | None = None
    work_environment: str | None = None
    organization_size: str | None = None
    leadership_challenges: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not any(
            [
                self.current_role,
                self.team_size,
                self.industry,
                self.years_in_leadership is not None,
                self.work_environment,
                self.organization_size,
                self.leadership_challenges,
            ]
        )


class DripUser(BaseModel):
    """Enrolled user as seen by the delivery core."""

    model_config = ConfigDict(extra="ignore")

    id: int
    email: str
    timezone: str = "UTC"
    goals: list[str] = Field(default_factory=list)
    program_week: int = Field(0, ge=0, le=PROGRAM_WEEKS)
    is_active: bool = True
    last_email_sent_at: datetime | None = None
    context: LeadershipContext = Field(default_factory=LeadershipContext)
    created_at: datetime | None = None

    @property
    def has_completed_program(self) -> bool:
        return self.program_week >= PROGRAM_WEEKS

    @property
    def next_week(self) -> int:
        return self.program_week + 1


class EmailRecord(BaseModel):
    """One row of email history (write-ahead record of a delivery attempt)."""

    id: int
    user_id: int
    week_number: int
    subject: str | None = None
    content: str | None = None
    action_item: str | None = None
    delivery_status: DeliveryStatus = STATUS_PENDING
    sent_at: datetime | None = None
    opened_at: datetime | None = None
    click_count: int = 0
    provider_message_id: str | None = None
    error_message: str | None = None
    job_id: str | None = None
    created_at: datetime | None = None


class _BaseEmailJob(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    user: DripUser
    enqueued_at: datetime = Field(default_factory=utcnow)
    attempt_count: int = 0
    last_error: str | None = None
    # Admin resends always create a fresh record and never advance progress
    resend: bool = False
    # Set while an accepted send is not yet recorded; a retry only reconciles the record
    sent_record_id: int | None = None
    provider_message_id: str | None = None


class WelcomeEmailJob(_BaseEmailJob):
    kind: Literal["welcome"] = "welcome"

    @property
    def week_number(self) -> int:
        return WELCOME_WEEK

    @property
    def priority(self) -> int:
        return WELCOME_PRIORITY


class WeeklyEmailJob(_BaseEmailJob):
    kind: Literal["weekly"] = "weekly"
    week_number: int = Field(..., ge=WELCOME_WEEK + 1, le=PROGRAM_WEEKS)

    @property
    def priority(self) -> int:
        return WEEKLY_PRIORITY


EmailJob = Annotated[WelcomeEmailJob | WeeklyEmailJob, Field(discriminator="kind")]

email_job_adapter: TypeAdapter[EmailJob] = TypeAdapter(EmailJob)


def serialize_job(job: WelcomeEmailJob | WeeklyEmailJob) -> str:
    return job.model_dump_json()


def deserialize_job(payload: str | bytes) -> WelcomeEmailJob | WeeklyEmailJob:
    return email_job_adapter.validate_json(payload)


class GoalAction(BaseModel):
    goal: str
    action: str


class CoachingContent(BaseModel):
    """Structured text returned by the content generator."""

    encouragement: str
    actions: list[GoalAction]
    goal_connection: str
    success_criteria: str | None = None
    is_fallback: bool = False

    @property
    def action_text(self) -> str:
        """Action text persisted on the email record and fed into next week."""
        if len(self.actions) == 1:
            return self.actions[0].action
        return "\n".join(f"{item.goal}: {item.action}" for item in self.actions)


@dataclass(slots=True)
class TransmissionResult:
    """Outcome of handing one message to the mail provider."""

    success: bool
    provider_message_id: str | None = None
    error: str | None = None
    status_code: int | None = None


@dataclass(slots=True)
class BatchResult:
    """Counts returned by a weekly batch run (scheduled or manual)."""

    processed: int = 0
    errors: int = 0
    queued: int = 0
    skipped: bool = False
    reason: str | None = None
    started_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "processed": self.processed,
            "errors": self.errors,
            "queued": self.queued,
        }
        if self.skipped:
            result["skipped"] = True
            result["reason"] = self.reason
        return result

"""
Request and response bodies for the drip campaign HTTP surface.
"""

from typing import Any

from pydantic import BaseModel, EmailStr, Field, field_validator

from app.features.drip_campaign.domain import LeadershipContext
from app.features.drip_campaign.services import resolve_timezone


class SignupRequest(BaseModel):
    """Request body for joining the 12-week program."""

    email: EmailStr
    timezone: str = Field("UTC", max_length=64)
    goals: list[str] = Field(..., min_length=1, max_length=3)
    context: LeadershipContext | None = None

    @field_validator("goals")
    @classmethod
    def goals_must_have_text(cls, goals: list[str]) -> list[str]:
        cleaned = [goal.strip() for goal in goals]
        if any(not goal for goal in cleaned):
            raise ValueError("Goals cannot be empty")
        return cleaned

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, timezone: str) -> str:
        _, valid = resolve_timezone(timezone)
        if not valid:
            raise ValueError(f"Unknown timezone '{timezone}'")
        return timezone


class SignupResponse(BaseModel):
    success: bool = True
    user_id: int
    message: str
    welcome_email_queued: bool


class QueueStatusResponse(BaseModel):
    status: dict[str, Any]
    failed_jobs: list[dict[str, Any]] = Field(default_factory=list)
    scheduler: dict[str, Any]


class BatchTriggerResponse(BaseModel):
    success: bool
    message: str
    result: dict[str, Any]


class ResendResponse(BaseModel):
    success: bool = True
    user_id: int
    job_id: str

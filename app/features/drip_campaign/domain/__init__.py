"""
Domain subpackage for the drip campaign feature.
"""

from .models import (
    PROGRAM_WEEKS,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    WELCOME_WEEK,
    BatchResult,
    CoachingContent,
    DeliveryStatus,
    DripUser,
    EmailJob,
    EmailRecord,
    EngagementLevel,
    GoalAction,
    LeadershipContext,
    TransmissionResult,
    WeeklyEmailJob,
    WelcomeEmailJob,
    deserialize_job,
    serialize_job,
    utcnow,
)

__all__ = [
    "PROGRAM_WEEKS",
    "STATUS_FAILED",
    "STATUS_PENDING",
    "STATUS_SENT",
    "WELCOME_WEEK",
    "BatchResult",
    "CoachingContent",
    "DeliveryStatus",
    "DripUser",
    "EmailJob",
    "EmailRecord",
    "EngagementLevel",
    "GoalAction",
    "LeadershipContext",
    "TransmissionResult",
    "WeeklyEmailJob",
    "WelcomeEmailJob",
    "deserialize_job",
    "serialize_job",
    "utcnow",
]

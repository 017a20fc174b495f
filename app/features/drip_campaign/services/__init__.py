"""
Service layer for the drip campaign feature.
"""

from .delivery_pipeline import FIRST_PREVIOUS_ACTION, EmailDeliveryError, EmailDeliveryPipeline
from .eligibility import EligibilitySelector, resolve_timezone, start_of_local_week
from .engagement import calculate_engagement_level
from .enrollment_service import EnrollmentService, UserAlreadyExistsError
from .monitoring_service import MonitoringService
from .scheduler import (
    ResendNotAllowedError,
    SchedulerError,
    UserNotFoundError,
    WeeklyEmailScheduler,
    next_job_for,
    seconds_until_next_hour,
)

__all__ = [
    "FIRST_PREVIOUS_ACTION",
    "EligibilitySelector",
    "EmailDeliveryError",
    "EmailDeliveryPipeline",
    "EnrollmentService",
    "MonitoringService",
    "ResendNotAllowedError",
    "SchedulerError",
    "UserAlreadyExistsError",
    "UserNotFoundError",
    "WeeklyEmailScheduler",
    "calculate_engagement_level",
    "next_job_for",
    "resolve_timezone",
    "seconds_until_next_hour",
    "start_of_local_week",
]

"""
Repository subpackage for the drip campaign feature.
"""

from .email_record_repository import (
    EmailRecordRepository,
    EmailRecordRepositoryError,
    email_record_repository,
)
from .user_repository import DripUserRepository, DripUserRepositoryError, drip_user_repository

__all__ = [
    "DripUserRepository",
    "DripUserRepositoryError",
    "EmailRecordRepository",
    "EmailRecordRepositoryError",
    "drip_user_repository",
    "email_record_repository",
]

"""
Email job queue backends.
"""

from .base import (
    BaseJobQueue,
    ClaimedJob,
    JobHandler,
    JobQueueError,
    QueueClosedError,
    RetryPolicy,
    SlidingWindowRateLimiter,
)
from .memory_queue import InMemoryJobQueue
from .redis_queue import RedisJobQueue

__all__ = [
    "BaseJobQueue",
    "ClaimedJob",
    "InMemoryJobQueue",
    "JobHandler",
    "JobQueueError",
    "QueueClosedError",
    "RedisJobQueue",
    "RetryPolicy",
    "SlidingWindowRateLimiter",
]

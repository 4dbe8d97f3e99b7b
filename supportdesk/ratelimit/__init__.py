"""Sliding-window rate limiting for AI responses, messages and uploads."""

from . import schemas
from .models import RateLimitBucket, RateLimitExceeded, bucket_key
from .repository import InMemoryRateLimitRepository, PostgresRateLimitRepository
from .service import RateLimiter

__all__ = [
    "InMemoryRateLimitRepository",
    "PostgresRateLimitRepository",
    "RateLimitBucket",
    "RateLimitExceeded",
    "RateLimiter",
    "bucket_key",
    "schemas",
]

"""Pydantic schemas for rate limit pre-flight checks."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class RateLimitStatus(BaseModel):
    limit_type: str
    identifier: str
    is_rate_limited: bool
    remaining_requests: int
    reset_at: datetime
    blocked_until: datetime | None = None
    message: str | None = None


class CleanupResult(BaseModel):
    deleted_count: int

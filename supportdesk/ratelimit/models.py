"""Domain models for sliding-window rate limiting."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


def bucket_key(limit_type: str, identifier: str) -> str:
    return f"{limit_type}:{identifier}"


@dataclass
class RequestEntry:
    timestamp: datetime
    metadata: dict[str, Any] | None = None


@dataclass
class RateLimitBucket:
    """Recorded requests for one ``limit_type``/``identifier`` pair."""

    key: str
    limit_type: str
    identifier: str
    created_at: datetime
    updated_at: datetime
    requests: list[RequestEntry] = field(default_factory=list)
    blocked_until: datetime | None = None

    def active_block(self, now: datetime) -> datetime | None:
        """Return ``blocked_until`` while the block is still in force."""

        if self.blocked_until is not None and self.blocked_until > now:
            return self.blocked_until
        return None

    def requests_after(self, window_start: datetime) -> list[RequestEntry]:
        return [entry for entry in self.requests if entry.timestamp > window_start]


class RateLimitExceeded(Exception):
    """A request was rejected by the limiter.

    This is an expected outcome rather than a bug, so it deliberately does not
    derive from :class:`~supportdesk.exceptions.SupportDeskError`. Callers use
    :attr:`retry_after` to tell users how long to wait.
    """

    def __init__(
        self,
        message: str,
        *,
        limit_type: str,
        identifier: str,
        retry_after: float,
        blocked_until: datetime | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.limit_type = limit_type
        self.identifier = identifier
        self.retry_after = max(0, math.ceil(retry_after))
        self.blocked_until = blocked_until

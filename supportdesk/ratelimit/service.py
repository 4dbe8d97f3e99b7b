"""Sliding-window rate limiter with a hard block on violation."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from ..config import RateLimitSettings
from . import schemas
from .models import RateLimitExceeded, RequestEntry, bucket_key
from .repository import RateLimitRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _blocked_message(blocked_until: datetime, now: datetime) -> str:
    seconds = math.ceil((blocked_until - now).total_seconds())
    return f"Rate limit exceeded. Please wait {seconds} seconds."


class RateLimiter:
    """Gate expensive or abusable operations per company or per user.

    A bucket keeps the timestamps recorded inside the current window. Once the
    window is full the next attempt sets ``blocked_until`` and every attempt
    before that instant is rejected, even if the window itself has drained.
    """

    def __init__(
        self,
        repository: RateLimitRepository,
        settings: RateLimitSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or RateLimitSettings()
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Read path

    def check(self, limit_type: str, identifier: str) -> schemas.RateLimitStatus:
        """Report whether the next request would be rejected. Never mutates."""

        rule = self._settings.rule_for(limit_type)
        now = self._clock()
        bucket = self._repository.get_bucket(bucket_key(limit_type, identifier))
        if bucket is None:
            return schemas.RateLimitStatus(
                limit_type=limit_type,
                identifier=identifier,
                is_rate_limited=False,
                remaining_requests=rule.max_requests,
                reset_at=now + rule.window,
            )
        blocked_until = bucket.active_block(now)
        if blocked_until is not None:
            return schemas.RateLimitStatus(
                limit_type=limit_type,
                identifier=identifier,
                is_rate_limited=True,
                remaining_requests=0,
                reset_at=blocked_until,
                blocked_until=blocked_until,
                message=_blocked_message(blocked_until, now),
            )
        recent = bucket.requests_after(now - rule.window)
        if len(recent) >= rule.max_requests:
            return schemas.RateLimitStatus(
                limit_type=limit_type,
                identifier=identifier,
                is_rate_limited=True,
                remaining_requests=0,
                reset_at=now + rule.block_duration,
                message=self._window_message(limit_type),
            )
        reset_at = min(entry.timestamp for entry in recent) + rule.window if recent else now + rule.window
        return schemas.RateLimitStatus(
            limit_type=limit_type,
            identifier=identifier,
            is_rate_limited=False,
            remaining_requests=rule.max_requests - len(recent),
            reset_at=reset_at,
        )

    # ------------------------------------------------------------------
    # Write path

    def record(
        self,
        limit_type: str,
        identifier: str,
        metadata: dict[str, Any] | None = None,
    ) -> schemas.RateLimitStatus:
        """Count one request or raise :class:`RateLimitExceeded`.

        The bucket is read, pruned and written back under the repository's
        lock so concurrent callers cannot both take the last slot.
        """

        rule = self._settings.rule_for(limit_type)
        now = self._clock()
        key = bucket_key(limit_type, identifier)
        rejection: RateLimitExceeded | None = None
        with self._repository.locked_bucket(
            key, limit_type=limit_type, identifier=identifier, now=now
        ) as bucket:
            blocked_until = bucket.active_block(now)
            if blocked_until is not None:
                rejection = RateLimitExceeded(
                    _blocked_message(blocked_until, now),
                    limit_type=limit_type,
                    identifier=identifier,
                    retry_after=(blocked_until - now).total_seconds(),
                    blocked_until=blocked_until,
                )
            else:
                recent = bucket.requests_after(now - rule.window)
                bucket.updated_at = now
                if len(recent) >= rule.max_requests:
                    bucket.requests = recent
                    bucket.blocked_until = now + rule.block_duration
                    rejection = RateLimitExceeded(
                        self._window_message(limit_type),
                        limit_type=limit_type,
                        identifier=identifier,
                        retry_after=rule.block_duration.total_seconds(),
                        blocked_until=bucket.blocked_until,
                    )
                else:
                    recent.append(RequestEntry(timestamp=now, metadata=metadata))
                    bucket.requests = recent
                    bucket.blocked_until = None
                    remaining = rule.max_requests - len(recent)
        if rejection is not None:
            logger.info(
                "Rate limit hit for %s (retry after %ss)", key, rejection.retry_after
            )
            raise rejection
        return schemas.RateLimitStatus(
            limit_type=limit_type,
            identifier=identifier,
            is_rate_limited=False,
            remaining_requests=remaining,
            reset_at=recent[0].timestamp + rule.window,
        )

    def reset(self, limit_type: str, identifier: str) -> None:
        self._settings.rule_for(limit_type)
        self._repository.delete_bucket(bucket_key(limit_type, identifier))

    def cleanup(self) -> int:
        """Delete buckets nobody touched within ``bucket_max_age``."""

        cutoff = self._clock() - self._settings.bucket_max_age
        deleted = self._repository.delete_stale(cutoff)
        if deleted:
            logger.info("Removed %s stale rate limit buckets", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Helpers

    def _window_message(self, limit_type: str) -> str:
        rule = self._settings.rule_for(limit_type)
        seconds = int(rule.window.total_seconds())
        return f"Rate limit exceeded. Maximum {rule.max_requests} requests per {seconds} seconds."

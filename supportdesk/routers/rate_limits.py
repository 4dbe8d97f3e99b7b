"""Rate limit pre-flight API route."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Request

from ..config import Settings, load_settings
from ..core.auth import Caller, get_caller
from ..core.db import DatabaseNotConfiguredError, connect
from ..core.services import build_rate_limiter
from ..ratelimit import RateLimiter
from ..ratelimit import schemas as ratelimit_schemas

router = APIRouter(prefix="/api/rate-limits", tags=["rate-limits"])

# Company-wide limits use the company id; everything else is per user.
_COMPANY_SCOPED = {"aiResponse"}


def _settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else load_settings()


@contextmanager
def _service_context(request: Request) -> Iterator[RateLimiter]:
    try:
        conn = connect()
    except DatabaseNotConfiguredError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    try:
        yield build_rate_limiter(conn, _settings(request))
    finally:
        conn.close()


@router.get("/{limit_type}", response_model=ratelimit_schemas.RateLimitStatus)
def check_rate_limit(
    limit_type: str, request: Request, caller: Caller = Depends(get_caller)
) -> ratelimit_schemas.RateLimitStatus:
    """Report whether the caller's next request of ``limit_type`` would pass."""

    if limit_type not in _settings(request).rate_limits.rules:
        raise HTTPException(status_code=404, detail=f"Unknown rate limit type: {limit_type}")
    identifier = str(caller.company_id if limit_type in _COMPANY_SCOPED else caller.user_id)
    with _service_context(request) as limiter:
        return limiter.check(limit_type, identifier)

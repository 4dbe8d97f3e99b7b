"""Translation of service exceptions into HTTP responses."""

from __future__ import annotations

import logging
import math

from fastapi import HTTPException, status

from ..exceptions import (
    AccessDeniedError,
    ConversationNotFoundError,
    DataIntegrityError,
    InvalidRequestError,
    InvalidTransitionError,
    PresenceNotFoundError,
    SupportDeskError,
)
from ..ratelimit import RateLimitExceeded

logger = logging.getLogger(__name__)

_STATUS_CODES: dict[type[SupportDeskError], int] = {
    ConversationNotFoundError: status.HTTP_404_NOT_FOUND,
    PresenceNotFoundError: status.HTTP_404_NOT_FOUND,
    AccessDeniedError: status.HTTP_403_FORBIDDEN,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    InvalidRequestError: status.HTTP_400_BAD_REQUEST,
}


def to_http_exception(exc: SupportDeskError | RateLimitExceeded) -> HTTPException:
    if isinstance(exc, RateLimitExceeded):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=exc.message,
            headers={"Retry-After": str(math.ceil(exc.retry_after))},
        )
    if isinstance(exc, DataIntegrityError):
        logger.error("Data integrity failure: %s", exc)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal data error",
        )
    for exc_type, code in _STATUS_CODES.items():
        if isinstance(exc, exc_type):
            return HTTPException(status_code=code, detail=str(exc))
    logger.error("Unmapped service error %s", exc.__class__.__name__)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error"
    )

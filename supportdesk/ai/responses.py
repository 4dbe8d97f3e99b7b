"""Completion parameters derived from company settings."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..config import AISettings

MAX_TOKENS_BY_LENGTH: Mapping[str, int] = {
    "brief": 500,
    "medium": 1000,
    "detailed": 2000,
}


def max_tokens_for(response_length: str) -> int:
    return MAX_TOKENS_BY_LENGTH.get(response_length, MAX_TOKENS_BY_LENGTH["medium"])


def completion_parameters(
    settings: AISettings,
    response_length: str,
    *overrides: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Merge overrides on top of the defaults for ``response_length``."""

    params: dict[str, Any] = {
        "temperature": settings.temperature,
        "max_tokens": max_tokens_for(response_length),
    }
    for override in overrides:
        if override:
            params.update(override)
    return params

"""Runtime configuration for the support engine.

Settings are plain frozen dataclasses assembled by :func:`load_settings` and
handed to each service explicitly. Nothing in the package reads these values
from a module-level global; ``main.py`` builds one :class:`Settings` instance
at startup and stores it on ``app.state``.

Every value can be overridden through an environment variable prefixed with
``SUPPORTDESK_`` (for example ``SUPPORTDESK_AI_RESPONSE_MAX_REQUESTS=20``).
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

_PREFIX = "SUPPORTDESK_"


class ResolvedPolicy(str, Enum):
    """What happens when a customer writes into a resolved conversation."""

    NEW_CONVERSATION = "new_conversation"
    REOPEN = "reopen"


@dataclass(frozen=True)
class RateLimitRule:
    window: timedelta
    max_requests: int
    block_duration: timedelta


@dataclass(frozen=True)
class RateLimitSettings:
    """Sliding-window rules keyed by limit type."""

    rules: Mapping[str, RateLimitRule] = field(
        default_factory=lambda: {
            "aiResponse": RateLimitRule(
                window=timedelta(seconds=60),
                max_requests=10,
                block_duration=timedelta(minutes=5),
            ),
            "userMessage": RateLimitRule(
                window=timedelta(seconds=60),
                max_requests=30,
                block_duration=timedelta(minutes=5),
            ),
            "fileUpload": RateLimitRule(
                window=timedelta(hours=1),
                max_requests=20,
                block_duration=timedelta(hours=1),
            ),
        }
    )
    bucket_max_age: timedelta = timedelta(hours=24)

    def rule_for(self, limit_type: str) -> RateLimitRule:
        try:
            return self.rules[limit_type]
        except KeyError as exc:
            raise ValueError(f"Unknown rate limit type: {limit_type}") from exc


@dataclass(frozen=True)
class PresenceSettings:
    ttl: timedelta = timedelta(seconds=60)
    cleanup_batch_size: int = 100


@dataclass(frozen=True)
class AISettings:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    request_timeout: float = 30.0
    history_limit: int = 20
    trigger_message_max_age: timedelta = timedelta(minutes=5)
    max_consecutive_failures: int = 3

    @property
    def processing_lease(self) -> timedelta:
        """How long an ``ai_processing`` flag is honoured before it is stale."""

        return timedelta(seconds=self.request_timeout * 2)


@dataclass(frozen=True)
class UsageSettings:
    warning_threshold: float = 0.8
    daily_retention: timedelta = timedelta(days=90)
    hourly_retention: timedelta = timedelta(days=7)


@dataclass(frozen=True)
class ConversationSettings:
    resolved_policy: ResolvedPolicy = ResolvedPolicy.NEW_CONVERSATION
    message_page_size: int = 50
    delivered_after: timedelta = timedelta(minutes=5)
    agent_greeting: str | None = None


@dataclass(frozen=True)
class Settings:
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    presence: PresenceSettings = field(default_factory=PresenceSettings)
    ai: AISettings = field(default_factory=AISettings)
    usage: UsageSettings = field(default_factory=UsageSettings)
    conversations: ConversationSettings = field(default_factory=ConversationSettings)


def _get(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    value = _get(env, name)
    return int(value) if value is not None else default


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    value = _get(env, name)
    return float(value) if value is not None else default


def _seconds(env: Mapping[str, str], name: str, default: timedelta) -> timedelta:
    value = _get(env, name)
    return timedelta(seconds=float(value)) if value is not None else default


def _load_rule(env: Mapping[str, str], limit_type: str, default: RateLimitRule) -> RateLimitRule:
    # aiResponse -> AI_RESPONSE
    key = "".join("_" + ch if ch.isupper() else ch.upper() for ch in limit_type)
    return RateLimitRule(
        window=_seconds(env, f"{key}_WINDOW_SECONDS", default.window),
        max_requests=_int(env, f"{key}_MAX_REQUESTS", default.max_requests),
        block_duration=_seconds(env, f"{key}_BLOCK_SECONDS", default.block_duration),
    )


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from ``environ`` (defaults to ``os.environ``)."""

    env = os.environ if environ is None else environ

    base_limits = RateLimitSettings()
    rate_limits = RateLimitSettings(
        rules={
            name: _load_rule(env, name, rule)
            for name, rule in base_limits.rules.items()
        },
        bucket_max_age=_seconds(env, "RATE_LIMIT_BUCKET_MAX_AGE_SECONDS", base_limits.bucket_max_age),
    )

    base_presence = PresenceSettings()
    presence = PresenceSettings(
        ttl=_seconds(env, "PRESENCE_TTL_SECONDS", base_presence.ttl),
        cleanup_batch_size=_int(env, "PRESENCE_CLEANUP_BATCH", base_presence.cleanup_batch_size),
    )

    base_ai = AISettings()
    ai = AISettings(
        provider=(_get(env, "AI_PROVIDER") or base_ai.provider).lower(),
        model=_get(env, "AI_MODEL") or base_ai.model,
        temperature=_float(env, "AI_TEMPERATURE", base_ai.temperature),
        request_timeout=_float(env, "AI_TIMEOUT_SECONDS", base_ai.request_timeout),
        history_limit=_int(env, "AI_HISTORY_LIMIT", base_ai.history_limit),
        trigger_message_max_age=_seconds(
            env, "AI_TRIGGER_MAX_AGE_SECONDS", base_ai.trigger_message_max_age
        ),
        max_consecutive_failures=_int(
            env, "AI_MAX_CONSECUTIVE_FAILURES", base_ai.max_consecutive_failures
        ),
    )

    base_usage = UsageSettings()
    usage = UsageSettings(
        warning_threshold=_float(env, "USAGE_WARNING_THRESHOLD", base_usage.warning_threshold),
        daily_retention=timedelta(
            days=_int(env, "USAGE_DAILY_RETENTION_DAYS", base_usage.daily_retention.days)
        ),
        hourly_retention=timedelta(
            days=_int(env, "USAGE_HOURLY_RETENTION_DAYS", base_usage.hourly_retention.days)
        ),
    )

    base_convo = ConversationSettings()
    policy = _get(env, "RESOLVED_POLICY")
    conversations = ConversationSettings(
        resolved_policy=ResolvedPolicy(policy.lower()) if policy else base_convo.resolved_policy,
        message_page_size=_int(env, "MESSAGE_PAGE_SIZE", base_convo.message_page_size),
        delivered_after=_seconds(env, "DELIVERED_AFTER_SECONDS", base_convo.delivered_after),
        agent_greeting=_get(env, "AGENT_GREETING"),
    )

    return Settings(
        rate_limits=rate_limits,
        presence=presence,
        ai=ai,
        usage=usage,
        conversations=conversations,
    )


__all__ = [
    "AISettings",
    "ConversationSettings",
    "PresenceSettings",
    "RateLimitRule",
    "RateLimitSettings",
    "ResolvedPolicy",
    "Settings",
    "UsageSettings",
    "load_settings",
]

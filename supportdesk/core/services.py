"""Construction of the Postgres-backed services for one request or job."""

from __future__ import annotations

import os
from functools import lru_cache
from uuid import UUID

import psycopg

from ..ai.client import LLMClient, build_llm_client
from ..companies import SqlCompanyDirectory
from ..config import AISettings, Settings
from ..conversations import ConversationService, PostgresConversationRepository
from ..notifications import LoggingNotifier, Notifier, WebhookNotifier
from ..presence import PostgresPresenceRepository, PresenceTracker
from ..ratelimit import PostgresRateLimitRepository, RateLimiter
from ..security.access import SqlAccessResolver
from ..usage import SqlUsageTracker, UsageAggregator
from .db import connect, get_session_factory


@lru_cache(maxsize=4)
def _llm_client(provider: str, timeout: float) -> LLMClient | None:
    return build_llm_client(AISettings(provider=provider, request_timeout=timeout))


def get_llm_client(settings: Settings) -> LLMClient | None:
    return _llm_client(settings.ai.provider, settings.ai.request_timeout)


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    url = os.getenv("NOTIFY_WEBHOOK_URL")
    if url and url.strip():
        return WebhookNotifier(url.strip())
    return LoggingNotifier()


def build_rate_limiter(conn: psycopg.Connection, settings: Settings) -> RateLimiter:
    return RateLimiter(PostgresRateLimitRepository(conn), settings.rate_limits)


def build_conversation_service(
    conn: psycopg.Connection, company_id: UUID, settings: Settings
) -> ConversationService:
    session_factory = get_session_factory()
    access = SqlAccessResolver(session_factory)
    notifier = get_notifier()
    return ConversationService(
        PostgresConversationRepository(conn, company_id),
        access=access,
        rate_limiter=build_rate_limiter(conn, settings),
        usage=SqlUsageTracker(
            session_factory, settings.usage, notifier=notifier, access=access
        ),
        companies=SqlCompanyDirectory(session_factory),
        llm=get_llm_client(settings),
        notifier=notifier,
        settings=settings,
    )


def build_presence_tracker(
    conn: psycopg.Connection, company_id: UUID, settings: Settings
) -> PresenceTracker:
    conversations = PostgresConversationRepository(conn, company_id)

    def conversation_company(conversation_id: int) -> UUID | None:
        conversation = conversations.get_conversation(conversation_id)
        return conversation.company_id if conversation else None

    return PresenceTracker(
        PostgresPresenceRepository(conn),
        access=SqlAccessResolver(get_session_factory()),
        conversation_company=conversation_company,
        settings=settings.presence,
    )


# Scheduled jobs ---------------------------------------------------------------
def cleanup_presence(settings: Settings) -> int:
    with connect() as conn:
        repository = PostgresPresenceRepository(conn)
        tracker = PresenceTracker(
            repository,
            access=SqlAccessResolver(get_session_factory()),
            conversation_company=lambda _conversation_id: None,
            settings=settings.presence,
        )
        return tracker.cleanup_expired()


def cleanup_rate_limits(settings: Settings) -> int:
    with connect() as conn:
        return build_rate_limiter(conn, settings).cleanup()


def aggregate_usage(settings: Settings):
    return UsageAggregator(get_session_factory(), settings.usage).aggregate_daily()

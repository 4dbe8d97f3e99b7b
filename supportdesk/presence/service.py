"""Typing indicators, viewing state and heartbeats."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from ..config import PresenceSettings
from ..exceptions import AccessDeniedError, ConversationNotFoundError, PresenceNotFoundError
from ..security.access import AccessResolver, authorize
from . import schemas
from .repository import PresenceRepository

logger = logging.getLogger(__name__)

ConversationCompanyLookup = Callable[[int], Optional[UUID]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PresenceTracker:
    """Short-lived "who is here" records that expire without a heartbeat.

    Every write pushes ``expires_at`` forward by the configured TTL. Reads
    about a conversation first resolve the company that owns it and check the
    caller is a member of that company.
    """

    def __init__(
        self,
        repository: PresenceRepository,
        *,
        access: AccessResolver,
        conversation_company: ConversationCompanyLookup,
        settings: PresenceSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._access = access
        self._conversation_company = conversation_company
        self._settings = settings or PresenceSettings()
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Writes

    def update_presence(
        self,
        user_id: UUID,
        company_id: UUID,
        *,
        viewing_conversation: int | None = None,
    ) -> schemas.Presence:
        access = self._access.resolve(user_id, company_id)
        if not access.has_access or access.role is None:
            raise AccessDeniedError("User is not a member of this company")
        now = self._clock()
        return self._repository.upsert(
            schemas.Presence(
                user_id=user_id,
                company_id=company_id,
                user_role=access.role,
                viewing_conversation=viewing_conversation,
                heartbeat_at=now,
                expires_at=now + self._settings.ttl,
            )
        )

    def heartbeat(self, user_id: UUID) -> schemas.Presence:
        return self._patch(user_id)

    def set_typing(
        self, user_id: UUID, conversation_id: int | None, is_typing: bool
    ) -> schemas.Presence:
        now = self._clock()
        if is_typing and conversation_id is not None:
            return self._patch(
                user_id,
                is_typing=True,
                typing_in_conversation=conversation_id,
                typing_started_at=now,
            )
        return self._patch(
            user_id, is_typing=False, typing_in_conversation=None, typing_started_at=None
        )

    def clear_typing(self, user_id: UUID) -> schemas.Presence:
        return self.set_typing(user_id, None, False)

    def set_viewing(self, user_id: UUID, conversation_id: int | None) -> schemas.Presence:
        return self._patch(user_id, viewing_conversation=conversation_id)

    def cleanup_expired(self) -> int:
        deleted = self._repository.delete_expired(
            self._clock(), self._settings.cleanup_batch_size
        )
        if deleted:
            logger.info("Removed %s expired presence records", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Reads

    def get_typing_users(
        self,
        conversation_id: int,
        *,
        requesting_user_id: UUID,
        exclude_user_id: UUID | None = None,
    ) -> list[schemas.TypingUser]:
        company_id = self._authorize_conversation(conversation_id, requesting_user_id)
        records = self._repository.list_typing(
            company_id, conversation_id, self._clock(), exclude_user_id
        )
        return [
            schemas.TypingUser(
                user_id=r.user_id, user_role=r.user_role, typing_started_at=r.typing_started_at
            )
            for r in records
        ]

    def get_viewing_agents(
        self, conversation_id: int, *, requesting_user_id: UUID
    ) -> list[schemas.ViewingAgent]:
        company_id = self._authorize_conversation(conversation_id, requesting_user_id)
        records = self._repository.list_viewing(company_id, conversation_id, self._clock())
        return [
            schemas.ViewingAgent(user_id=r.user_id, user_role=r.user_role, heartbeat_at=r.heartbeat_at)
            for r in records
        ]

    def get_user_presence(
        self, user_id: UUID, *, requesting_user_id: UUID
    ) -> schemas.UserPresence | None:
        record = self._repository.get(user_id)
        if record is None:
            return None
        authorize(self._access, requesting_user_id, record.company_id, "can_view_presence")
        return schemas.UserPresence(
            **record.model_dump(), active=record.is_active(self._clock())
        )

    def get_company_presence(
        self, company_id: UUID, *, requesting_user_id: UUID
    ) -> list[schemas.Presence]:
        authorize(self._access, requesting_user_id, company_id, "can_view_presence")
        return self._repository.list_active(company_id, self._clock())

    # ------------------------------------------------------------------
    # Helpers

    def _patch(self, user_id: UUID, **fields) -> schemas.Presence:
        now = self._clock()
        updated = self._repository.update(
            user_id, heartbeat_at=now, expires_at=now + self._settings.ttl, **fields
        )
        if updated is None:
            raise PresenceNotFoundError(f"No presence record for user {user_id}")
        return updated

    def _authorize_conversation(self, conversation_id: int, user_id: UUID) -> UUID:
        company_id = self._conversation_company(conversation_id)
        if company_id is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        authorize(self._access, user_id, company_id, "can_view_presence")
        return company_id


__all__ = ["ConversationCompanyLookup", "PresenceTracker"]

"""Pydantic schemas for presence and typing indicators."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class Presence(BaseModel):
    user_id: UUID
    company_id: UUID
    user_role: str
    is_typing: bool = False
    typing_in_conversation: int | None = None
    typing_started_at: datetime | None = None
    viewing_conversation: int | None = None
    heartbeat_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


class UserPresence(Presence):
    active: bool


class TypingUser(BaseModel):
    user_id: UUID
    user_role: str
    typing_started_at: datetime | None = None


class ViewingAgent(BaseModel):
    user_id: UUID
    user_role: str
    heartbeat_at: datetime


class PresenceUpdateRequest(BaseModel):
    viewing_conversation: int | None = None


class TypingRequest(BaseModel):
    conversation_id: int
    is_typing: bool = True


class ViewingRequest(BaseModel):
    conversation_id: int | None = None


class CleanupResult(BaseModel):
    deleted_count: int

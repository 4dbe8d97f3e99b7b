"""Pydantic schemas for conversation APIs."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from .models import (
    AIOutcome,
    ClaimOutcome,
    ConversationStatus,
    DeliveryStatus,
    MessageRole,
    SystemMessageType,
)


class Conversation(BaseModel):
    id: int
    company_id: UUID
    customer_id: UUID
    status: ConversationStatus = ConversationStatus.AI_HANDLING
    participating_agents: list[UUID] = Field(default_factory=list)
    ai_processing: bool = False
    ai_processing_started_at: datetime | None = None
    ai_failure_count: int = 0
    handoff_triggered_at: datetime | None = None
    handoff_reason: str | None = None
    message_count: int = 0
    first_message_at: datetime | None = None
    last_message_at: datetime | None = None
    last_agent_message: datetime | None = None
    resolved_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class Message(BaseModel):
    id: int
    conversation_id: int
    company_id: UUID
    role: MessageRole
    content: str
    timestamp: datetime
    attachment_url: str | None = None
    attachment_type: str | None = None
    read_by_agent_at: datetime | None = None
    read_by_customer_at: datetime | None = None
    ai_model: str | None = None
    tokens_used: int | None = None
    processing_time_ms: int | None = None
    agent_id: UUID | None = None
    agent_name: str | None = None
    system_message_type: SystemMessageType | None = None


class ConversationOverview(Conversation):
    latest_message: Message | None = None
    delivery_status: DeliveryStatus | None = None
    has_unread_messages: bool = False


class ConversationList(BaseModel):
    items: list[ConversationOverview]
    total: int


class MessageList(BaseModel):
    items: list[Message]
    has_more: bool = False


class StatusCounts(BaseModel):
    ai_handling: int = 0
    available: int = 0
    support_staff_handling: int = 0
    resolved: int = 0
    total: int = 0


class CustomerMessageRequest(BaseModel):
    content: str = ""
    conversation_id: int | None = None
    attachment_url: str | None = None
    attachment_type: str | None = None


class AgentMessageRequest(BaseModel):
    content: str = Field(min_length=1)


class HandoffRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class CustomerMessageResult(BaseModel):
    conversation: Conversation
    message: Message
    ai_eligible: bool
    started_new_conversation: bool = False


class ClaimResult(BaseModel):
    conversation: Conversation
    outcome: ClaimOutcome


class AgentMessageResult(BaseModel):
    conversation: Conversation
    message: Message
    claim: ClaimOutcome | None = None


class AIResponseResult(BaseModel):
    outcome: AIOutcome
    conversation: Conversation | None = None
    message: Message | None = None
    handoff_reason: str | None = None


class ReadReceipt(BaseModel):
    conversation_id: int
    marked: int


class UnreadCount(BaseModel):
    conversation_id: int
    count: int

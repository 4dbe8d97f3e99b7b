"""Domain enums and value objects used by the conversation service."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ConversationStatus(str, Enum):
    AI_HANDLING = "ai_handling"
    AVAILABLE = "available"
    SUPPORT_STAFF_HANDLING = "support_staff_handling"
    RESOLVED = "resolved"


class MessageRole(str, Enum):
    CUSTOMER = "customer"
    AI = "ai"
    AGENT = "agent"
    SYSTEM = "system"


class SystemMessageType(str, Enum):
    HANDOFF = "handoff"
    AGENT_JOINED = "agent_joined"
    ISSUE_RESOLVED = "issue_resolved"
    HANDBACK = "handback"


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    JOINED = "joined"
    ALREADY_PARTICIPATING = "already_participating"


class AIOutcome(str, Enum):
    REPLIED = "replied"
    RULE_MATCHED = "rule_matched"
    ESCALATED = "escalated"
    HANDED_OFF = "handed_off"
    FAILED = "failed"
    SKIPPED = "skipped"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"


class Reader(str, Enum):
    """Which side of the conversation is marking messages read."""

    AGENT = "agent"
    CUSTOMER = "customer"

    @property
    def unread_roles(self) -> tuple[MessageRole, ...]:
        if self is Reader.AGENT:
            return (MessageRole.CUSTOMER,)
        return (MessageRole.AI, MessageRole.AGENT)


# Status messages written to the audit trail
HANDOFF_REQUESTED_BY_CUSTOMER = "Customer requested human support"
HANDOFF_MESSAGE = "Conversation handed off to support staff."
REOPENED_MESSAGE = "Your conversation has been reopened."
HANDBACK_MESSAGE = "Conversation handed back to the AI assistant."
QUOTA_REACHED_MESSAGE = (
    "AI support bot is currently not available at the moment. "
    "A support staff will be in contact with you shortly."
)
QUOTA_REACHED_REASON = "AI usage limit reached for this company"
RATE_LIMIT_REASON = "AI rate limit reached"
AI_UNAVAILABLE_REASON = "AI assistant unavailable"
FALLBACK_REPLY = (
    "I apologize, but I'm having trouble processing your request. "
    "Please try again or wait for a human agent."
)
RULE_MODEL = "if_then_rules"
DEFAULT_STAFF_NAME = "Support staff"


@dataclass
class NewMessage:
    """Fields for a message row about to be appended."""

    conversation_id: int
    company_id: uuid.UUID
    role: MessageRole
    content: str
    timestamp: datetime
    attachment_url: str | None = None
    attachment_type: str | None = None
    ai_model: str | None = None
    tokens_used: int | None = None
    processing_time_ms: int | None = None
    agent_id: uuid.UUID | None = None
    agent_name: str | None = None
    system_message_type: SystemMessageType | None = None

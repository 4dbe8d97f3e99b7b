"""Conversation lifecycle services and schemas."""

from . import schemas
from .models import (
    AIOutcome,
    ClaimOutcome,
    ConversationStatus,
    DeliveryStatus,
    MessageRole,
    Reader,
    SystemMessageType,
)
from .repository import (
    InMemoryConversationRepository,
    InMemoryConversationStore,
    PostgresConversationRepository,
)
from .service import ConversationService, delivery_status_for

__all__ = [
    "AIOutcome",
    "ClaimOutcome",
    "ConversationService",
    "ConversationStatus",
    "DeliveryStatus",
    "InMemoryConversationRepository",
    "InMemoryConversationStore",
    "MessageRole",
    "PostgresConversationRepository",
    "Reader",
    "SystemMessageType",
    "delivery_status_for",
    "schemas",
]

"""Error taxonomy shared by the support services.

Routers map these onto HTTP status codes; nothing here ever carries provider
or database error text meant for a customer.
"""

from __future__ import annotations


class SupportDeskError(RuntimeError):
    """Base class for expected, caller-visible failures."""


class ConversationNotFoundError(SupportDeskError):
    """Raised when a conversation does not exist for the current company."""


class AccessDeniedError(SupportDeskError):
    """Raised when the caller lacks the capability for an operation."""


class InvalidTransitionError(SupportDeskError):
    """Raised when a status change is not allowed from the current state."""


class PresenceNotFoundError(SupportDeskError):
    """Raised when updating typing state for a user with no presence record."""


class InvalidRequestError(SupportDeskError):
    """Raised when a request is missing required content."""


class DataIntegrityError(SupportDeskError):
    """Raised when stored records disagree about tenant ownership."""


class LLMProviderError(SupportDeskError):
    """Raised by LLM clients for network, timeout and provider failures."""


__all__ = [
    "AccessDeniedError",
    "ConversationNotFoundError",
    "DataIntegrityError",
    "InvalidRequestError",
    "InvalidTransitionError",
    "LLMProviderError",
    "PresenceNotFoundError",
    "SupportDeskError",
]

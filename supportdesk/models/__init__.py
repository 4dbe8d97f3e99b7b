"""SQLAlchemy declarative base and tenant-facing models.

Conversations, messages, presence and rate limit buckets are stored through
raw SQL repositories; the models here cover the records those repositories
consult: companies and their plans, user memberships and usage counters.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export models so callers can import them via ``from supportdesk.models import Company``.
from .tenant import Company, Plan, User, UserCompany
from .usage import UsageRecord


__all__ = [
    "Base",
    "Company",
    "Plan",
    "UsageRecord",
    "User",
    "UserCompany",
]

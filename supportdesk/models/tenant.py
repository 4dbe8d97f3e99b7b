"""Company, plan and membership models.

Companies own every conversation. Their AI configuration columns feed the
system prompt builder and their plan caps monthly AI responses.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


class Plan(Base):
    """Subscription tier limiting monthly AI responses."""

    __tablename__ = "plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(length=64), nullable=False)
    ai_responses_per_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    companies: Mapped[List["Company"]] = relationship(back_populates="plan")


class Company(Base):
    """A tenant using the support desk.

    Attributes:
        ai_personality: One of ``professional``, ``friendly``, ``casual`` or
            ``technical``.
        ai_response_length: One of ``brief``, ``medium`` or ``detailed``.
        ai_system_prompt: Free-text custom instructions for the assistant.
        ai_handoff_triggers: Built-in trigger keys and free-text triggers.
        company_context: Processed knowledge base text.
        ai_responses_this_month: Counter compared against the plan limit.
        usage_warning_sent: Set once the usage warning went out this month.
    """

    __tablename__ = "companies"
    __table_args__ = (Index("ix_companies_plan_id", "plan_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("plans.id", ondelete="SET NULL"), nullable=True
    )
    ai_personality: Mapped[str] = mapped_column(
        String(length=32), nullable=False, default="professional", server_default=text("'professional'")
    )
    ai_response_length: Mapped[str] = mapped_column(
        String(length=32), nullable=False, default="medium", server_default=text("'medium'")
    )
    ai_system_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    ai_handoff_triggers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    company_context: Mapped[str] = mapped_column(Text, nullable=False, default="")
    selected_ai_model: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    ai_responses_this_month: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    usage_warning_sent: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    plan: Mapped[Optional[Plan]] = relationship(back_populates="companies")
    memberships: Mapped[List["UserCompany"]] = relationship(
        back_populates="company", cascade="all, delete-orphan", passive_deletes=True
    )


class User(Base):
    """A person using the desk as customer or staff (identity lives upstream)."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    display_name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(length=320), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    memberships: Mapped[List["UserCompany"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )


class UserCompany(Base):
    """Membership of a user in a company with a role."""

    __tablename__ = "user_companies"
    __table_args__ = (
        Index("ix_user_companies_user_company_unique", "user_id", "company_id", unique=True),
        Index("ix_user_companies_company_role", "company_id", "role"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(
        String(length=32), nullable=False, default="customer", server_default=text("'customer'")
    )
    joined_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    user: Mapped[User] = relationship(back_populates="memberships")
    company: Mapped[Company] = relationship(back_populates="memberships")

"""Hourly and daily usage counters per company."""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from . import Base

HOURLY = "hourly"
DAILY = "daily"

COUNTER_COLUMNS = (
    "ai_response_count",
    "customer_message_count",
    "agent_message_count",
    "conversation_count",
    "handoff_count",
)


class UsageRecord(Base):
    """One bucket of counters; ``period_start`` is truncated to the hour or day."""

    __tablename__ = "usage_records"
    __table_args__ = (
        Index("ix_usage_records_bucket_unique", "company_id", "period", "period_start", unique=True),
        Index("ix_usage_records_period_start", "period", "period_start"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False
    )
    period: Mapped[str] = mapped_column(String(length=16), nullable=False)
    period_start: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ai_response_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    customer_message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    agent_message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    handoff_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

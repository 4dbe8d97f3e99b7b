"""Usage counter kinds and quota snapshots."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum


class UsageEvent(str, Enum):
    """Hourly counter columns incremented by the conversation engine."""

    AI_RESPONSE = "ai_response_count"
    CUSTOMER_MESSAGE = "customer_message_count"
    AGENT_MESSAGE = "agent_message_count"
    CONVERSATION = "conversation_count"
    HANDOFF = "handoff_count"


@dataclass(frozen=True)
class UsageLimit:
    has_reached_limit: bool
    current_usage: int
    limit: int
    remaining: int
    plan_name: str

    @classmethod
    def compute(cls, current_usage: int, limit: int, plan_name: str) -> "UsageLimit":
        remaining = max(0, limit - current_usage)
        return cls(
            has_reached_limit=remaining <= 0,
            current_usage=current_usage,
            limit=limit,
            remaining=remaining,
            plan_name=plan_name,
        )


@dataclass(frozen=True)
class AggregationReport:
    day: date
    companies: int
    hourly_rows_folded: int
    daily_rows_pruned: int
    hourly_rows_pruned: int

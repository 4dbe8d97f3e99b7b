"""Monthly AI quota checks and hourly usage counters."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..config import UsageSettings
from ..exceptions import DataIntegrityError
from ..models import Company, Plan, UsageRecord
from ..models.session import session_scope
from ..models.usage import HOURLY
from ..notifications import LoggingNotifier, Notifier, notify_usage_warning
from ..security.access import AccessResolver
from .models import UsageEvent, UsageLimit

logger = logging.getLogger(__name__)

NO_PLAN = "No plan"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hour_bucket(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


class UsageQuota(Protocol):
    """What the conversation engine needs from billing."""

    def check_usage_limit(self, company_id: uuid.UUID) -> UsageLimit: ...

    def track_ai_response(self, company_id: uuid.UUID) -> UsageLimit: ...

    def record_event(self, company_id: uuid.UUID, event: UsageEvent) -> None: ...


class SqlUsageTracker:
    """Quota and counters backed by ``companies`` and ``usage_records``."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: UsageSettings | None = None,
        *,
        notifier: Notifier | None = None,
        access: AccessResolver | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or UsageSettings()
        self._notifier = notifier or LoggingNotifier()
        self._access = access
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Quota

    def check_usage_limit(self, company_id: uuid.UUID) -> UsageLimit:
        with self._session_factory() as session:
            return self._load_limit(session, company_id)

    def track_ai_response(self, company_id: uuid.UUID) -> UsageLimit:
        """Count one AI response and send the usage warning once per month."""

        with session_scope(self._session_factory) as session:
            session.execute(
                update(Company)
                .where(Company.id == company_id)
                .values(ai_responses_this_month=Company.ai_responses_this_month + 1)
            )
            self._bump_hourly(session, company_id, UsageEvent.AI_RESPONSE)
            limit = self._load_limit(session, company_id)
            should_warn = False
            if limit.limit > 0 and limit.current_usage >= limit.limit * self._settings.warning_threshold:
                claimed = session.execute(
                    update(Company)
                    .where(Company.id == company_id, Company.usage_warning_sent.is_(False))
                    .values(usage_warning_sent=True)
                )
                should_warn = claimed.rowcount == 1
        if should_warn:
            self._send_warning(company_id, limit)
        return limit

    def reset_monthly_usage(self, company_id: uuid.UUID) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(
                update(Company)
                .where(Company.id == company_id)
                .values(ai_responses_this_month=0, usage_warning_sent=False)
            )

    # ------------------------------------------------------------------
    # Hourly counters

    def record_event(self, company_id: uuid.UUID, event: UsageEvent) -> None:
        with session_scope(self._session_factory) as session:
            self._bump_hourly(session, company_id, event)

    def _bump_hourly(self, session: Session, company_id: uuid.UUID, event: UsageEvent) -> None:
        period_start = hour_bucket(self._clock())
        column = getattr(UsageRecord, event.value)
        stmt = (
            update(UsageRecord)
            .where(
                UsageRecord.company_id == company_id,
                UsageRecord.period == HOURLY,
                UsageRecord.period_start == period_start,
            )
            .values({event.value: column + 1})
        )
        if session.execute(stmt).rowcount:
            return
        try:
            with session.begin_nested():
                session.add(
                    UsageRecord(
                        company_id=company_id,
                        period=HOURLY,
                        period_start=period_start,
                        **{event.value: 1},
                    )
                )
        except IntegrityError:
            # another writer created the hour's row first
            session.execute(stmt)

    # ------------------------------------------------------------------
    # Helpers

    def _load_limit(self, session: Session, company_id: uuid.UUID) -> UsageLimit:
        row = session.execute(
            select(Company.ai_responses_this_month, Plan.name, Plan.ai_responses_per_month)
            .outerjoin(Plan, Plan.id == Company.plan_id)
            .where(Company.id == company_id)
        ).first()
        if row is None:
            raise DataIntegrityError(f"Company {company_id} does not exist")
        limit = row.ai_responses_per_month or 0
        return UsageLimit.compute(row.ai_responses_this_month, limit, row.name or NO_PLAN)

    def _send_warning(self, company_id: uuid.UUID, limit: UsageLimit) -> None:
        admins = self._access.list_members(company_id, ["admin"]) if self._access else []
        logger.info(
            "Company %s reached %s/%s AI responses", company_id, limit.current_usage, limit.limit
        )
        notify_usage_warning(
            self._notifier,
            company_id=company_id,
            admin_ids=admins,
            current_usage=limit.current_usage,
            limit=limit.limit,
            plan_name=limit.plan_name,
            threshold=self._settings.warning_threshold,
        )


class InMemoryUsageTracker:
    """Process-local quota used by tests and local runs."""

    def __init__(self, default_limit: int = 1000, plan_name: str = "Test") -> None:
        self._default_limit = default_limit
        self._plan_name = plan_name
        self._limits: dict[uuid.UUID, int] = {}
        self._usage: dict[uuid.UUID, int] = defaultdict(int)
        self.events: dict[tuple[uuid.UUID, UsageEvent], int] = defaultdict(int)
        self._lock = threading.Lock()

    def set_limit(self, company_id: uuid.UUID, limit: int, *, used: int = 0) -> None:
        with self._lock:
            self._limits[company_id] = limit
            self._usage[company_id] = used

    def check_usage_limit(self, company_id: uuid.UUID) -> UsageLimit:
        with self._lock:
            return self._snapshot(company_id)

    def track_ai_response(self, company_id: uuid.UUID) -> UsageLimit:
        with self._lock:
            self._usage[company_id] += 1
            self.events[(company_id, UsageEvent.AI_RESPONSE)] += 1
            return self._snapshot(company_id)

    def record_event(self, company_id: uuid.UUID, event: UsageEvent) -> None:
        with self._lock:
            self.events[(company_id, event)] += 1

    def _snapshot(self, company_id: uuid.UUID) -> UsageLimit:
        limit = self._limits.get(company_id, self._default_limit)
        return UsageLimit.compute(self._usage[company_id], limit, self._plan_name)

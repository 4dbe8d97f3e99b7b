"""Nightly roll-up of hourly usage rows into daily totals."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from ..config import UsageSettings
from ..models import UsageRecord
from ..models.session import session_scope
from ..models.usage import COUNTER_COLUMNS, DAILY, HOURLY
from .models import AggregationReport

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageAggregator:
    """Fold one day's hourly counters into a daily row per company.

    Each company is folded in its own transaction: the hourly rows are read
    with a row lock, summed into the daily row and deleted before commit, so
    a rerun after a crash never counts the same hour twice.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: UsageSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or UsageSettings()
        self._clock = clock or _utcnow

    def aggregate_daily(self, day: date | None = None) -> AggregationReport:
        now = self._clock()
        target = day or (now - timedelta(days=1)).date()
        start = datetime.combine(target, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        folded = 0
        companies = self._companies_with_hourly_rows(start, end)
        for company_id in companies:
            folded += self._fold_company(company_id, start, end)

        daily_pruned, hourly_pruned = self.prune(now)
        logger.info(
            "Aggregated usage for %s: %s companies, %s hourly rows folded",
            target.isoformat(),
            len(companies),
            folded,
        )
        return AggregationReport(
            day=target,
            companies=len(companies),
            hourly_rows_folded=folded,
            daily_rows_pruned=daily_pruned,
            hourly_rows_pruned=hourly_pruned,
        )

    def prune(self, now: datetime | None = None) -> tuple[int, int]:
        """Delete daily rows past retention and stray hourly rows."""

        moment = now or self._clock()
        with session_scope(self._session_factory) as session:
            daily = session.execute(
                delete(UsageRecord).where(
                    UsageRecord.period == DAILY,
                    UsageRecord.period_start < moment - self._settings.daily_retention,
                )
            ).rowcount
            hourly = session.execute(
                delete(UsageRecord).where(
                    UsageRecord.period == HOURLY,
                    UsageRecord.period_start < moment - self._settings.hourly_retention,
                )
            ).rowcount
        return daily or 0, hourly or 0

    # ------------------------------------------------------------------
    # Helpers

    def _companies_with_hourly_rows(self, start: datetime, end: datetime) -> list[uuid.UUID]:
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(UsageRecord.company_id)
                    .where(
                        UsageRecord.period == HOURLY,
                        UsageRecord.period_start >= start,
                        UsageRecord.period_start < end,
                    )
                    .distinct()
                )
            )

    def _fold_company(self, company_id: uuid.UUID, start: datetime, end: datetime) -> int:
        with session_scope(self._session_factory) as session:
            rows = list(
                session.scalars(
                    select(UsageRecord)
                    .where(
                        UsageRecord.company_id == company_id,
                        UsageRecord.period == HOURLY,
                        UsageRecord.period_start >= start,
                        UsageRecord.period_start < end,
                    )
                    .with_for_update()
                )
            )
            if not rows:
                return 0
            totals = {name: sum(getattr(row, name) for row in rows) for name in COUNTER_COLUMNS}

            daily = session.scalars(
                select(UsageRecord)
                .where(
                    UsageRecord.company_id == company_id,
                    UsageRecord.period == DAILY,
                    UsageRecord.period_start == start,
                )
                .with_for_update()
            ).first()
            if daily is None:
                session.add(
                    UsageRecord(company_id=company_id, period=DAILY, period_start=start, **totals)
                )
            else:
                for name, value in totals.items():
                    setattr(daily, name, getattr(daily, name) + value)

            session.execute(
                delete(UsageRecord).where(UsageRecord.id.in_([row.id for row in rows]))
            )
            return len(rows)

"""Atomic per-period save quota."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from les_audit.database import dialect_name
from les_audit.models import QuotaCounter

logger = logging.getLogger(__name__)


class QuotaExceededError(Exception):
    """Raised when a rate-limited operation is over its period limit."""

    def __init__(self, user_id: str, route: str, period: str, limit: int):
        self.user_id = user_id
        self.route = route
        self.period = period
        self.limit = limit
        super().__init__(
            f"Quota exceeded for route '{route}' in period {period}: limit {limit}"
        )


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of one increment attempt."""

    allowed: bool
    count: int


def quota_period(now: datetime | None = None) -> str:
    """Calendar month (UTC) a moment falls in, e.g. "2026-03"."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"{now.year:04d}-{now.month:02d}"


def _insert_for(session: AsyncSession):
    name = dialect_name(session)
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Quota counters are not supported on dialect '{name}'")


class QuotaService:
    """Increment-if-under counters keyed by (user, route, period).

    The check and the increment are one statement:

        INSERT ... VALUES (count=1)
        ON CONFLICT (user_id, route, period)
        DO UPDATE SET count = count + 1 WHERE count < :limit
        RETURNING count

    No returned row means the counter was already at the limit. Two
    concurrent callers can never both observe "under quota".
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def increment_if_under(
        self,
        user_id: str,
        route: str,
        period: str,
        limit: int,
    ) -> QuotaDecision:
        """Atomically increment a counter unless it is at or above limit."""
        if limit <= 0:
            return QuotaDecision(allowed=False, count=await self.current_count(user_id, route, period))

        table = QuotaCounter.__table__
        insert = _insert_for(self.session)
        stmt = insert(QuotaCounter).values(
            user_id=user_id,
            route=route,
            period=period,
            count=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "route", "period"],
            set_={"count": table.c.count + 1, "updated_at": func.now()},
            where=table.c.count < limit,
        ).returning(table.c.count)

        result = await self.session.execute(stmt)
        count = result.scalar_one_or_none()
        if count is None:
            return QuotaDecision(allowed=False, count=await self.current_count(user_id, route, period))
        return QuotaDecision(allowed=True, count=count)

    async def consume(self, user_id: str, route: str, period: str, limit: int) -> int:
        """Increment or raise QuotaExceededError. Returns the new count."""
        decision = await self.increment_if_under(user_id, route, period, limit)
        if not decision.allowed:
            logger.info(
                "Quota denied: user=%s route=%s period=%s count=%d limit=%d",
                user_id,
                route,
                period,
                decision.count,
                limit,
            )
            raise QuotaExceededError(user_id, route, period, limit)
        return decision.count

    async def current_count(self, user_id: str, route: str, period: str) -> int:
        result = await self.session.execute(
            select(QuotaCounter.count).where(
                QuotaCounter.user_id == user_id,
                QuotaCounter.route == route,
                QuotaCounter.period == period,
            )
        )
        return result.scalar_one_or_none() or 0

"""SQL-backed entitlement lookup."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from les_audit.models import Subscription
from les_audit.services.tier_policy import Tier

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trialing"})


class EntitlementService(Protocol):
    async def get_tier(self, user_id: str) -> Tier:
        ...


class SqlEntitlementService:
    """Tier from the subscription table.

    Missing rows, inactive or lapsed subscriptions and unknown tier values
    all resolve to FREE.
    """

    def __init__(self, session: AsyncSession, now: datetime | None = None):
        self.session = session
        self.now = now

    async def get_tier(self, user_id: str) -> Tier:
        result = await self.session.execute(
            select(Subscription).where(Subscription.user_id == user_id)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            return Tier.FREE
        if (subscription.status or "").strip().lower() not in ACTIVE_STATUSES:
            return Tier.FREE

        period_end = subscription.current_period_end
        if period_end is not None:
            if period_end.tzinfo is None:
                period_end = period_end.replace(tzinfo=timezone.utc)
            now = self.now or datetime.now(timezone.utc)
            if period_end < now:
                logger.info("Subscription for %s lapsed at %s", user_id, period_end.isoformat())
                return Tier.FREE

        return Tier.parse(subscription.tier)

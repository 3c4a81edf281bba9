"""SQL-backed profile store."""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from les_audit.calculators.profile import InvalidInputError, validate_profile
from les_audit.calculators.types import ComponentCode, ProfileSnapshot, SpecialPayEligibility
from les_audit.models import MemberProfile


class ProfileNotFoundError(InvalidInputError):
    """Raised when a user has no stored profile and none was supplied."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("profile", f"no stored profile for user '{user_id}'")


class ProfileStore(Protocol):
    async def get_profile(self, user_id: str) -> ProfileSnapshot:
        ...


class SqlProfileStore:
    """Reads member_profile and member_special_pay into a ProfileSnapshot."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_profile(self, user_id: str) -> ProfileSnapshot:
        result = await self.session.execute(
            select(MemberProfile)
            .where(MemberProfile.user_id == user_id)
            .options(selectinload(MemberProfile.special_pays))
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise ProfileNotFoundError(user_id)

        try:
            special_pays = tuple(
                SpecialPayEligibility(
                    code=ComponentCode(sp.code),
                    monthly_override_cents=sp.monthly_override_cents,
                )
                for sp in row.special_pays
            )
        except ValueError as exc:
            raise InvalidInputError("special_pays", str(exc)) from exc

        return validate_profile(
            ProfileSnapshot(
                paygrade=row.paygrade,
                with_dependents=row.with_dependents,
                years_of_service=row.years_of_service,
                location_code=row.location_code,
                special_pays=special_pays,
                tsp_contribution_percent=row.tsp_contribution_percent,
                sgli_coverage_cents=row.sgli_coverage_cents,
                dental_premium_cents=row.dental_premium_cents,
            )
        )

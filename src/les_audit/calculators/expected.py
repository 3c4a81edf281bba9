"""Expected pay snapshot builder."""

from __future__ import annotations

import bisect
import logging
from decimal import ROUND_HALF_UP, Decimal

from les_audit.calculators.profile import (
    audit_as_of_date,
    rank_yos_warning,
    validate_profile,
)
from les_audit.calculators.rate_resolver import (
    RateCache,
    RateIntegrityError,
    RateNotFoundError,
    RateResolver,
)
from les_audit.calculators.types import (
    ComponentCode,
    DataQualityWarning,
    ExpectedComponent,
    ExpectedPaySnapshot,
    ProfileSnapshot,
    RateKey,
)

logger = logging.getLogger(__name__)

# Years-of-service columns of the basic pay table.
YOS_BRACKETS = (0, 2, 3, 4, 6, 8, 10, 12, 14, 16, 18, 20, 22, 24, 26, 30, 34, 38, 40)


def yos_bracket(years_of_service: int) -> int:
    """Largest pay table column <= years of service."""
    index = bisect.bisect_right(YOS_BRACKETS, years_of_service) - 1
    return YOS_BRACKETS[max(index, 0)]


class ExpectedSnapshotBuilder:
    """Composes resolved rates into one ExpectedPaySnapshot.

    Component order (stable, and the order flags are emitted in):
    1) Base pay           paygrade + YOS bracket
    2) BAH                location + paygrade + dependency (if a location is set)
    3) BAS                enlisted / officer
    4) COLA               location + paygrade + dependency (optional)
    5) Special pays       member override, else paygrade with flat-schedule fallback
    6) SGLI               coverage amount (if declared)
    7) TSP                contribution percent x expected base pay
    8) Dental             member-declared premium (if declared)

    A required component that cannot be resolved is kept at zero with a
    RATE_NOT_FOUND warning; the build never fails because one rate is missing.
    Only TSP reads another component's value (base pay).
    """

    def __init__(self, resolver: RateResolver):
        self.resolver = resolver

    async def build(self, profile: ProfileSnapshot, month: int, year: int) -> ExpectedPaySnapshot:
        """Build the expected snapshot for a profile and month."""
        profile = validate_profile(profile)
        as_of = audit_as_of_date(month, year)
        cache = RateCache()

        components: list[ExpectedComponent] = []
        warnings: list[DataQualityWarning] = []

        rank_warning = rank_yos_warning(profile)
        if rank_warning is not None:
            warnings.append(rank_warning)

        base_pay = await self._resolve_required(
            ComponentCode.BASE_PAY,
            RateKey(paygrade=profile.paygrade, yos_bracket=yos_bracket(profile.years_of_service)),
            None,
            as_of,
            cache,
            warnings,
        )
        components.append(base_pay)

        if profile.location_code:
            components.append(
                await self._resolve_required(
                    ComponentCode.BAH,
                    self._location_key(profile),
                    None,
                    as_of,
                    cache,
                    warnings,
                )
            )

        components.append(
            await self._resolve_required(
                ComponentCode.BAS,
                RateKey(category=profile.member_category),
                None,
                as_of,
                cache,
                warnings,
            )
        )

        if profile.location_code:
            cola = await self._resolve_optional(
                ComponentCode.COLA, self._location_key(profile), as_of, cache, warnings
            )
            if cola is not None:
                components.append(cola)

        for special in sorted(profile.special_pays, key=lambda sp: sp.code.value):
            if special.monthly_override_cents is not None:
                components.append(
                    ExpectedComponent(
                        component=special.code,
                        amount_cents=special.monthly_override_cents,
                        source="member_override",
                    )
                )
                continue
            components.append(
                await self._resolve_required(
                    special.code,
                    RateKey(paygrade=profile.paygrade),
                    RateKey(),
                    as_of,
                    cache,
                    warnings,
                )
            )

        if profile.sgli_coverage_cents:
            components.append(
                await self._resolve_required(
                    ComponentCode.SGLI,
                    RateKey(coverage_cents=profile.sgli_coverage_cents),
                    None,
                    as_of,
                    cache,
                    warnings,
                )
            )

        if profile.tsp_contribution_percent:
            components.append(self._derive_tsp(profile, base_pay, warnings))

        if profile.dental_premium_cents is not None:
            components.append(
                ExpectedComponent(
                    component=ComponentCode.DENTAL,
                    amount_cents=profile.dental_premium_cents,
                    source="member_declared",
                )
            )

        for warning in warnings:
            logger.warning(
                "Expected pay %02d/%d: %s %s", month, year, warning.code, warning.message
            )

        return ExpectedPaySnapshot(
            month=month,
            year=year,
            profile=profile,
            components=tuple(components),
            warnings=tuple(warnings),
        )

    @staticmethod
    def _location_key(profile: ProfileSnapshot) -> RateKey:
        return RateKey(
            location_code=profile.location_code,
            paygrade=profile.paygrade,
            with_dependents=profile.with_dependents,
        )

    async def _resolve_required(
        self,
        component: ComponentCode,
        key: RateKey,
        fallback: RateKey | None,
        as_of,
        cache: RateCache,
        warnings: list[DataQualityWarning],
    ) -> ExpectedComponent:
        try:
            resolved = await self.resolver.resolve(
                component.value, key, as_of, fallback=fallback, cache=cache
            )
        except RateNotFoundError:
            warnings.append(
                DataQualityWarning(
                    code="RATE_NOT_FOUND",
                    component=component,
                    message=(
                        f"No published {component.value} rate for this profile as of "
                        f"{as_of.isoformat()}; the expected amount is unknown."
                    ),
                )
            )
            return ExpectedComponent(component=component, amount_cents=0, resolved=False, source="unresolved")
        except RateIntegrityError as exc:
            logger.error("Rate table integrity fault: %s", exc)
            warnings.append(
                DataQualityWarning(
                    code="RATE_INTEGRITY_FAULT",
                    component=component,
                    message=f"The {component.value} reference rate is inconsistent and was not used.",
                )
            )
            return ExpectedComponent(component=component, amount_cents=0, resolved=False, source="unresolved")

        if resolved.used_fallback:
            warnings.append(
                DataQualityWarning(
                    code="RATE_FALLBACK_USED",
                    component=component,
                    message=(
                        f"No {component.value} rate specific to this profile; "
                        f"the standard schedule rate was used."
                    ),
                )
            )
        return ExpectedComponent(
            component=component,
            amount_cents=resolved.amount_cents,
            effective_date=resolved.record.effective_date,
            used_fallback=resolved.used_fallback,
        )

    async def _resolve_optional(
        self,
        component: ComponentCode,
        key: RateKey,
        as_of,
        cache: RateCache,
        warnings: list[DataQualityWarning],
    ) -> ExpectedComponent | None:
        """Resolve a component that legitimately may not exist (COLA)."""
        try:
            resolved = await self.resolver.resolve(component.value, key, as_of, cache=cache)
        except RateNotFoundError:
            return None
        except RateIntegrityError as exc:
            logger.error("Rate table integrity fault: %s", exc)
            warnings.append(
                DataQualityWarning(
                    code="RATE_INTEGRITY_FAULT",
                    component=component,
                    message=f"The {component.value} reference rate is inconsistent and was not used.",
                )
            )
            return ExpectedComponent(component=component, amount_cents=0, resolved=False, source="unresolved")
        return ExpectedComponent(
            component=component,
            amount_cents=resolved.amount_cents,
            effective_date=resolved.record.effective_date,
        )

    @staticmethod
    def _derive_tsp(
        profile: ProfileSnapshot,
        base_pay: ExpectedComponent,
        warnings: list[DataQualityWarning],
    ) -> ExpectedComponent:
        # TSP is elected as a percentage of basic pay only.
        if not base_pay.resolved:
            warnings.append(
                DataQualityWarning(
                    code="RATE_NOT_FOUND",
                    component=ComponentCode.TSP,
                    message="TSP cannot be estimated without an expected base pay.",
                )
            )
            return ExpectedComponent(
                component=ComponentCode.TSP, amount_cents=0, resolved=False, source="unresolved"
            )
        amount = (Decimal(base_pay.amount_cents) * profile.tsp_contribution_percent).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return ExpectedComponent(
            component=ComponentCode.TSP,
            amount_cents=int(amount),
            source="derived",
            effective_date=base_pay.effective_date,
        )

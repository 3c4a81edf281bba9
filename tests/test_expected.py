"""Tests for the expected pay snapshot builder."""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from les_audit.calculators.expected import ExpectedSnapshotBuilder, yos_bracket
from les_audit.calculators.profile import InvalidInputError, normalize_paygrade
from les_audit.calculators.rate_resolver import InMemoryRateStore, RateResolver
from les_audit.calculators.types import ComponentCode, RateKey, SpecialPayEligibility

from .conftest import (
    BAS_ENLISTED,
    E05_BAH_NY_WITH,
    E05_BASE_PAY,
    SDAP_FLAT,
    SGLI_500K_COVERAGE,
    SGLI_500K_PREMIUM,
    e5_profile,
)


def builder_for(store) -> ExpectedSnapshotBuilder:
    return ExpectedSnapshotBuilder(RateResolver(store))


class TestHelpers:
    """Test paygrade and YOS helpers."""

    @pytest.mark.parametrize(
        "raw,expected",
        [("E-5", "E05"), ("e5", "E05"), ("E05", "E05"), ("O-10", "O10"), ("w2", "W02")],
    )
    def test_normalize_paygrade(self, raw, expected):
        assert normalize_paygrade(raw) == expected

    @pytest.mark.parametrize("raw", ["E-10", "X5", "", "O-0", "W6"])
    def test_invalid_paygrade(self, raw):
        with pytest.raises(InvalidInputError):
            normalize_paygrade(raw)

    @pytest.mark.parametrize(
        "yos,bracket", [(0, 0), (1, 0), (2, 2), (5, 4), (6, 6), (29, 26), (45, 40)]
    )
    def test_yos_bracket(self, yos, bracket):
        """Bracket is the largest pay table column <= YOS."""
        assert yos_bracket(yos) == bracket


class TestExpectedSnapshotBuilder:
    """Test snapshot composition."""

    async def test_builds_core_components(self, rate_store, profile):
        """Base pay, BAH and BAS resolve for a complete E-5 profile."""
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)

        assert snapshot.amounts == {
            ComponentCode.BASE_PAY: E05_BASE_PAY,
            ComponentCode.BAH: E05_BAH_NY_WITH,
            ComponentCode.BAS: BAS_ENLISTED,
        }
        assert snapshot.is_complete
        assert snapshot.warnings == ()
        assert snapshot.profile.paygrade == "E05"

    async def test_deterministic(self, rate_store, profile):
        """Identical inputs produce identical snapshots."""
        builder = builder_for(rate_store)
        first = await builder.build(profile, 6, 2025)
        second = await builder.build(profile, 6, 2025)
        assert first == second
        assert first.to_dict() == second.to_dict()

    async def test_profile_not_mutated(self, rate_store, profile):
        before = replace(profile)
        await builder_for(rate_store).build(profile, 6, 2025)
        assert profile == before

    async def test_uses_rates_in_effect_for_month(self, rate_store, profile):
        """A 2024 audit month resolves the 2024 rates."""
        snapshot = await builder_for(rate_store).build(profile, 12, 2024)
        assert snapshot.get(ComponentCode.BAH).amount_cents == 170_000
        assert snapshot.get(ComponentCode.BAH).effective_date == date(2024, 1, 1)

    async def test_missing_rate_gives_partial_snapshot(self, rate_store, profile):
        """A missing BAH rate degrades to a warning, never a failure."""
        snapshot = await builder_for(rate_store).build(
            replace(profile, location_code="ZZ999"), 6, 2025
        )

        bah = snapshot.get(ComponentCode.BAH)
        assert bah.amount_cents == 0
        assert not bah.resolved
        assert not snapshot.is_complete
        assert snapshot.get(ComponentCode.BASE_PAY).resolved
        assert [(w.code, w.component) for w in snapshot.warnings] == [
            ("RATE_NOT_FOUND", ComponentCode.BAH)
        ]

    async def test_no_location_skips_location_components(self, rate_store, profile):
        snapshot = await builder_for(rate_store).build(replace(profile, location_code=None), 6, 2025)
        assert snapshot.get(ComponentCode.BAH) is None
        assert snapshot.get(ComponentCode.COLA) is None

    async def test_cola_is_optional(self, rate_store, profile):
        """No COLA rate means no COLA component and no warning."""
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)
        assert snapshot.get(ComponentCode.COLA) is None
        assert snapshot.warnings == ()

    async def test_cola_included_when_published(self, rate_store, profile):
        rate_store.add(
            "COLA",
            RateKey(location_code="NY349", paygrade="E05", with_dependents=True),
            date(2025, 1, 1),
            12_000,
        )
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)
        assert snapshot.get(ComponentCode.COLA).amount_cents == 12_000

    async def test_special_pay_flat_fallback(self, rate_store, sdap_profile):
        """A special pay with no paygrade-specific rate uses the flat schedule."""
        snapshot = await builder_for(rate_store).build(sdap_profile, 6, 2025)

        sdap = snapshot.get(ComponentCode.SDAP)
        assert sdap.amount_cents == SDAP_FLAT
        assert sdap.used_fallback
        assert [w.code for w in snapshot.warnings] == ["RATE_FALLBACK_USED"]

    async def test_special_pay_override(self, rate_store):
        """A member override replaces the resolved amount."""
        profile = e5_profile(
            special_pays=(SpecialPayEligibility(ComponentCode.SDAP, monthly_override_cents=45_000),)
        )
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)

        sdap = snapshot.get(ComponentCode.SDAP)
        assert sdap.amount_cents == 45_000
        assert sdap.source == "member_override"

    async def test_special_pay_without_any_rate(self, rate_store):
        """FLPP has neither a paygrade rate nor a flat schedule."""
        profile = e5_profile(special_pays=(SpecialPayEligibility(ComponentCode.FLPP),))
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)

        assert not snapshot.get(ComponentCode.FLPP).resolved
        assert [w.code for w in snapshot.warnings] == ["RATE_NOT_FOUND"]

    async def test_special_pays_in_code_order(self):
        store = InMemoryRateStore()
        store.add("BAS", RateKey(category="enlisted"), date(2025, 1, 1), BAS_ENLISTED)
        profile = e5_profile(
            location_code=None,
            special_pays=(
                SpecialPayEligibility(ComponentCode.SDAP, monthly_override_cents=100),
                SpecialPayEligibility(ComponentCode.FLPP, monthly_override_cents=200),
            ),
        )
        snapshot = await builder_for(store).build(profile, 6, 2025)
        codes = [c.component for c in snapshot.components]
        assert codes.index(ComponentCode.FLPP) < codes.index(ComponentCode.SDAP)

    async def test_tsp_derived_from_base_pay(self, rate_store):
        """TSP is contribution percent x expected base pay, half-up."""
        profile = e5_profile(tsp_contribution_percent=Decimal("0.05"))
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)

        tsp = snapshot.get(ComponentCode.TSP)
        assert tsp.source == "derived"
        assert tsp.amount_cents == 18_512  # 370230 * 0.05 = 18511.5

    async def test_tsp_unresolved_without_base_pay(self, rate_store):
        profile = e5_profile(years_of_service=30, tsp_contribution_percent=Decimal("0.05"))
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)
        assert not snapshot.get(ComponentCode.TSP).resolved
        assert not snapshot.get(ComponentCode.BASE_PAY).resolved

    async def test_sgli_by_coverage(self, rate_store):
        profile = e5_profile(sgli_coverage_cents=SGLI_500K_COVERAGE)
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)
        assert snapshot.get(ComponentCode.SGLI).amount_cents == SGLI_500K_PREMIUM

    async def test_declared_dental_premium(self, rate_store):
        profile = e5_profile(dental_premium_cents=1_500)
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)
        dental = snapshot.get(ComponentCode.DENTAL)
        assert dental.amount_cents == 1_500
        assert dental.source == "member_declared"
        assert snapshot.components[-1] is dental

    async def test_no_dental_without_declaration(self, rate_store, profile):
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)
        assert snapshot.get(ComponentCode.DENTAL) is None

    async def test_negative_dental_premium(self, rate_store):
        with pytest.raises(InvalidInputError):
            await builder_for(rate_store).build(e5_profile(dental_premium_cents=-1), 6, 2025)

    async def test_rank_yos_warning(self, rate_store):
        """Implausible rank and YOS produce a warning, not an error."""
        profile = e5_profile(paygrade="E-9", years_of_service=6)
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)
        assert "RANK_YOS_IMPLAUSIBLE" in [w.code for w in snapshot.warnings]

    async def test_integrity_fault_degrades_component(self, rate_store, profile):
        rate_store.add(
            "BAH",
            RateKey(location_code="NY349", paygrade="E05", with_dependents=True),
            date(2025, 1, 1),
            1,
        )
        snapshot = await builder_for(rate_store).build(profile, 6, 2025)
        assert not snapshot.get(ComponentCode.BAH).resolved
        assert "RATE_INTEGRITY_FAULT" in [w.code for w in snapshot.warnings]

    @pytest.mark.parametrize("month,year", [(0, 2025), (13, 2025), (6, 1999)])
    async def test_invalid_period(self, rate_store, profile, month, year):
        with pytest.raises(InvalidInputError):
            await builder_for(rate_store).build(profile, month, year)

    async def test_invalid_years_of_service(self, rate_store):
        with pytest.raises(InvalidInputError):
            await builder_for(rate_store).build(e5_profile(years_of_service=-1), 6, 2025)

    async def test_snapshot_round_trips_through_dict(self, rate_store, sdap_profile):
        """Persisted form restores the same snapshot."""
        from les_audit.calculators.types import ExpectedPaySnapshot

        snapshot = await builder_for(rate_store).build(sdap_profile, 6, 2025)
        assert ExpectedPaySnapshot.from_dict(snapshot.to_dict()) == snapshot

"""Reconciliation engine.

Diffs an ExpectedPaySnapshot against normalized line items and emits one
flag per reconciled component. delta is always actual - expected.

Beyond the rate-table components:
- FICA and Medicare, when on the LES, are checked as a percentage of the
  taxable wage base (expected base pay + COLA + special pays).
- Dental is checked only against a member-declared premium.
- Net pay, when supplied, is checked against the LES math.

Income taxes, allotments, SBP and OTHER items are not flagged; they only
contribute to the section totals (and the net pay math).
"""

from __future__ import annotations

from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import Collection, Iterable, Sequence

from les_audit.calculators.codes import description_for
from les_audit.calculators.types import (
    SPECIAL_PAY_CODES,
    ActualLineItem,
    ComponentCode,
    Confidence,
    ExpectedComponent,
    ExpectedPaySnapshot,
    Flag,
    FlagKind,
    ReconciliationResult,
    Section,
    Severity,
    WaterfallRow,
)
from les_audit.config import ReconciliationPolicy, ToleranceBand

# Components with a reference rate (or derivation) to check against.
RECONCILED_COMPONENTS = (
    ComponentCode.BASE_PAY,
    ComponentCode.BAH,
    ComponentCode.BAS,
    ComponentCode.COLA,
    ComponentCode.SDAP,
    ComponentCode.HFP_IDP,
    ComponentCode.FSA,
    ComponentCode.FLPP,
    ComponentCode.SGLI,
    ComponentCode.TSP,
)

# Employee payroll tax rates, applied to the taxable wage base.
PAYROLL_TAX_RATES = {
    ComponentCode.FICA: Decimal("0.062"),
    ComponentCode.MEDICARE: Decimal("0.0145"),
}

# Sections subtracted from gross allowances to reach net pay.
_NET_PAY_DEDUCTED = (Section.TAX, Section.DEDUCTION, Section.ALLOTMENT)


def format_dollars(cents: int) -> str:
    """Format cents as "$1,234.56" (sign dropped)."""
    return f"${abs(cents) / 100:,.2f}"


def _signed_dollars(cents: int) -> str:
    return ("+" if cents >= 0 else "-") + format_dollars(cents)


def classify_severity(delta_cents: int, band: ToleranceBand) -> Severity:
    """Severity for a delta. Depends only on |delta| and the band."""
    magnitude = abs(delta_cents)
    if magnitude <= band.green_max_cents:
        return Severity.GREEN
    if magnitude <= band.yellow_max_cents:
        return Severity.YELLOW
    return Severity.RED


_MISMATCH_SUGGESTIONS = {
    ComponentCode.BASE_PAY: (
        "Contact your finance office to verify the pay table is applied for your "
        "rank and time in service. A recent promotion not yet in DJMS or an "
        "incorrect YOS date are common causes. Bring pay tables and your service record."
    ),
    ComponentCode.BAH: (
        "Contact your finance office. Bring this LES and verify your duty station "
        "and dependent status are correct in DEERS/DJMS. Request retroactive "
        "correction if applicable."
    ),
    ComponentCode.BAS: (
        "Verify with finance that the correct BAS rate is applied. A recent rate "
        "change or a partial month of entitlement can cause a variance."
    ),
    ComponentCode.COLA: (
        "Verify the duty station code in DJMS matches your actual location. "
        "COLA rates update quarterly, so check for a recent rate change."
    ),
    ComponentCode.TSP: (
        "Verify your TSP contribution percentage in myPay matches your profile. "
        "A recent election change can take 1-2 pay periods to take effect."
    ),
    ComponentCode.SGLI: (
        "Verify your SGLI coverage amount in myPay. If you recently changed "
        "coverage, the premium adjusts next pay period. Contact finance if overcharged."
    ),
    ComponentCode.DENTAL: (
        "Compare the premium with your current dental plan statement. Premiums "
        "change each plan year, and adding or removing family members changes the rate."
    ),
    ComponentCode.FICA: (
        "Social Security is withheld at 6.2% of taxable pay. Ask finance to confirm "
        "your taxable wage base; a retroactive payment or a mid-month change can "
        "shift one month."
    ),
    ComponentCode.MEDICARE: (
        "Medicare is withheld at 1.45% of taxable pay. Ask finance to confirm "
        "your taxable wage base if the difference repeats next month."
    ),
    ComponentCode.NET_PAY: (
        "Check that every line item was entered, including debts, recoupments and "
        "one-time adjustments. If the LES is complete, ask finance to explain the difference."
    ),
}

_MISSING_SUGGESTIONS = {
    ComponentCode.BASE_PAY: (
        "File a pay ticket with your finance office immediately. Bring orders, "
        "ID card and this LES, and request retroactive payment."
    ),
    ComponentCode.BAS: (
        "File a pay ticket with your finance office. BAS is a mandatory "
        "entitlement; request retroactive payment from the start of entitlement."
    ),
    ComponentCode.COLA: (
        "Verify with finance that your duty station qualifies for COLA. After a "
        "PCS, make sure DJMS reflects the new duty station."
    ),
}


def _mismatch_suggestion(component: ComponentCode, label: str) -> str:
    if component in _MISMATCH_SUGGESTIONS:
        return _MISMATCH_SUGGESTIONS[component]
    return (
        f"Verify the {label} rate with finance. Special pay rates vary by assignment "
        "and proficiency level; confirm the entitlement in your service record."
    )


def _missing_suggestion(component: ComponentCode, label: str) -> str:
    if component in _MISSING_SUGGESTIONS:
        return _MISSING_SUGGESTIONS[component]
    if component in SPECIAL_PAY_CODES:
        return (
            f"Contact finance to confirm your {label} entitlement is in the system. "
            "Bring supporting documentation and request retroactive payment if applicable."
        )
    return _mismatch_suggestion(component, label)


class ReconciliationEngine:
    """Pure reducer from (expected snapshot, line items) to flags.

    Severity is a three-band function of |delta| using the component's
    ToleranceBand. A component whose expected amount could not be resolved,
    or which appears on the LES with no expected amount at all, gets a
    yellow UNVERIFIABLE flag.
    """

    def __init__(self, policy: ReconciliationPolicy | None = None):
        self.policy = policy or ReconciliationPolicy()

    def reconcile(
        self,
        expected: ExpectedPaySnapshot,
        items: Sequence[ActualLineItem],
        net_pay_cents: int | None = None,
        rejected_codes: Collection[ComponentCode] = frozenset(),
    ) -> tuple[Flag, ...]:
        """Emit exactly one flag per reconciled component.

        rejected_codes are components that had a line item rejected during
        normalization; their LES totals are incomplete, so they are
        unverifiable rather than missing or mismatched.
        """
        actuals = self._sum_by_component(items)
        flags: list[Flag] = []
        seen: set[ComponentCode] = set()

        for component in expected.components:
            if component.component in seen:
                continue
            seen.add(component.component)
            actual = actuals.get(component.component, 0)
            if component.component in rejected_codes:
                flags.append(self._rejected(component.component, actual))
                continue
            flags.append(self._flag_for(component, actual, expected))

        for code in RECONCILED_COMPONENTS:
            if code in seen or code not in actuals:
                continue
            flags.append(self._unverifiable(code, actuals[code], "no expected amount applies to this profile"))

        for code in PAYROLL_TAX_RATES:
            if code not in actuals:
                continue
            if code in rejected_codes:
                flags.append(self._rejected(code, actuals[code]))
            else:
                flags.append(self._payroll_tax_flag(code, actuals[code], expected))

        if net_pay_cents is not None:
            if rejected_codes:
                flags.append(
                    self._unverifiable(
                        ComponentCode.NET_PAY,
                        net_pay_cents,
                        "some line items were rejected, so the LES math is incomplete",
                    )
                )
            else:
                flags.append(self._net_pay_flag(items, net_pay_cents))

        return tuple(flags)

    def run(
        self,
        expected: ExpectedPaySnapshot,
        items: Sequence[ActualLineItem],
        net_pay_cents: int | None = None,
        rejected_codes: Collection[ComponentCode] = frozenset(),
    ) -> ReconciliationResult:
        """Reconcile and assemble waterfall, section totals and confidence."""
        flags = self.reconcile(expected, items, net_pay_cents, rejected_codes)
        waterfall = tuple(
            WaterfallRow(
                component=flag.component,
                expected_cents=flag.expected_cents,
                actual_cents=flag.actual_cents,
                delta_cents=flag.delta_cents,
                severity=flag.severity,
                verifiable=flag.verifiable,
            )
            for flag in flags
        )
        return ReconciliationResult(
            flags=flags,
            waterfall=waterfall,
            section_totals=self.section_totals(items),
            confidence=self.confidence(expected, flags),
            warnings=expected.warnings,
        )

    @staticmethod
    def section_totals(items: Iterable[ActualLineItem]) -> dict[str, int]:
        totals = {section.value: 0 for section in Section}
        for item in items:
            totals[item.section.value] += item.amount_cents
        return totals

    @staticmethod
    def confidence(expected: ExpectedPaySnapshot, flags: Sequence[Flag]) -> Confidence:
        if any(w.degrades_result for w in expected.warnings):
            return Confidence.LOW
        if expected.warnings or any(not f.verifiable for f in flags):
            return Confidence.MEDIUM
        return Confidence.HIGH

    @staticmethod
    def _sum_by_component(items: Iterable[ActualLineItem]) -> dict[ComponentCode, int]:
        sums: dict[ComponentCode, int] = defaultdict(int)
        for item in items:
            sums[item.code] += item.amount_cents
        return dict(sums)

    def _flag_for(
        self,
        component: ExpectedComponent,
        actual_cents: int,
        expected: ExpectedPaySnapshot,
    ) -> Flag:
        code = component.component
        if not component.resolved:
            return self._unverifiable(code, actual_cents, "the reference rate is unavailable")

        band = self.policy.band_for(code.value)
        label = description_for(code)
        delta = actual_cents - component.amount_cents
        severity = classify_severity(delta, band)
        expected_str = format_dollars(component.amount_cents)
        actual_str = format_dollars(actual_cents)

        if severity is Severity.GREEN:
            kind = FlagKind.CORRECT
            headline = f"{label} matches the expected amount"
            message = f"{label} verified: received {actual_str}, expected {expected_str}."
            suggestion = f"No action needed. {label} matches the expected rate."
        elif actual_cents == 0:
            kind = FlagKind.MISSING
            headline = f"{label} not found on this LES"
            message = (
                f"{label} not found on LES. Expected {expected_str}/month"
                f"{self._profile_context(code, expected)}."
            )
            suggestion = _missing_suggestion(code, label)
        else:
            kind = FlagKind.MISMATCH
            headline = f"{label} differs from the expected amount"
            message = (
                f"{label} variance: received {actual_str}, expected {expected_str}"
                f"{self._profile_context(code, expected)}. Delta: {_signed_dollars(delta)}."
            )
            suggestion = _mismatch_suggestion(code, label)

        if component.used_fallback:
            message += " Expected amount uses the standard schedule rate."

        return Flag(
            component=code,
            flag_code=f"{code.value}_{kind.value}",
            kind=kind,
            severity=severity,
            delta_cents=delta,
            expected_cents=component.amount_cents,
            actual_cents=actual_cents,
            band=band,
            headline=headline,
            message=message,
            suggestion=suggestion,
        )

    @staticmethod
    def wage_base_cents(expected: ExpectedPaySnapshot) -> int | None:
        """Taxable wage base: expected base pay + COLA + special pays.

        None when base pay, or any part of the base, has no resolved amount.
        """
        parts = [
            c
            for c in expected.components
            if c.component in (ComponentCode.BASE_PAY, ComponentCode.COLA)
            or c.component in SPECIAL_PAY_CODES
        ]
        if not any(c.component is ComponentCode.BASE_PAY for c in parts):
            return None
        if not all(c.resolved for c in parts):
            return None
        return sum(c.amount_cents for c in parts)

    def _payroll_tax_flag(
        self,
        code: ComponentCode,
        actual_cents: int,
        expected: ExpectedPaySnapshot,
    ) -> Flag:
        base = self.wage_base_cents(expected)
        if not base:
            return self._unverifiable(code, actual_cents, "the taxable wage base is unknown")

        rate = PAYROLL_TAX_RATES[code]
        expected_cents = int(
            (Decimal(base) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )
        band = self.policy.band_for(code.value)
        label = description_for(code)
        delta = actual_cents - expected_cents
        severity = classify_severity(delta, band)
        rate_pct = f"{(rate * 100).normalize()}%"
        actual_pct = (Decimal(actual_cents) * 100 / Decimal(base)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
        base_str = format_dollars(base)

        if severity is Severity.GREEN:
            kind = FlagKind.CORRECT
            headline = f"{label} matches {rate_pct} of taxable pay"
            message = (
                f"{label} verified: withheld {format_dollars(actual_cents)}, "
                f"{actual_pct}% of the {base_str} taxable wage base."
            )
            suggestion = f"No action needed. {label} is withheld at the expected rate."
        else:
            kind = FlagKind.MISMATCH
            headline = f"{label} is not {rate_pct} of taxable pay"
            message = (
                f"{label} withheld {format_dollars(actual_cents)} is {actual_pct}% of the "
                f"{base_str} taxable wage base; expected {rate_pct} "
                f"({format_dollars(expected_cents)}). Delta: {_signed_dollars(delta)}."
            )
            suggestion = _mismatch_suggestion(code, label)

        return Flag(
            component=code,
            flag_code=f"{code.value}_{kind.value}",
            kind=kind,
            severity=severity,
            delta_cents=delta,
            expected_cents=expected_cents,
            actual_cents=actual_cents,
            band=band,
            headline=headline,
            message=message,
            suggestion=suggestion,
        )

    def _net_pay_flag(self, items: Sequence[ActualLineItem], net_pay_cents: int) -> Flag:
        totals = self.section_totals(items)
        computed = (
            totals[Section.ALLOWANCE.value]
            - sum(totals[s.value] for s in _NET_PAY_DEDUCTED)
            + totals[Section.OTHER.value]
        )
        code = ComponentCode.NET_PAY
        band = self.policy.band_for(code.value)
        delta = net_pay_cents - computed
        severity = classify_severity(delta, band)
        computed_str = format_dollars(computed)
        if computed < 0:
            computed_str = "-" + computed_str

        if severity is Severity.GREEN:
            kind = FlagKind.CORRECT
            headline = "Net pay matches the LES math"
            message = (
                f"Net pay verified: received {format_dollars(net_pay_cents)}, "
                f"line items add up to {computed_str}."
            )
            suggestion = "No action needed. Net pay matches the line items."
        else:
            kind = FlagKind.MISMATCH
            headline = "Net pay does not match the LES math"
            message = (
                f"Net pay variance: received {format_dollars(net_pay_cents)}, but allowances "
                f"{format_dollars(totals[Section.ALLOWANCE.value])} less taxes "
                f"{format_dollars(totals[Section.TAX.value])}, deductions "
                f"{format_dollars(totals[Section.DEDUCTION.value])} and allotments "
                f"{format_dollars(totals[Section.ALLOTMENT.value])}, plus other items "
                f"{_signed_dollars(totals[Section.OTHER.value])}, come to {computed_str}. "
                f"Delta: {_signed_dollars(delta)}."
            )
            suggestion = _mismatch_suggestion(code, "Net Pay")

        return Flag(
            component=code,
            flag_code=f"{code.value}_{kind.value}",
            kind=kind,
            severity=severity,
            delta_cents=delta,
            expected_cents=computed,
            actual_cents=net_pay_cents,
            band=band,
            headline=headline,
            message=message,
            suggestion=suggestion,
        )

    def _rejected(self, code: ComponentCode, actual_cents: int) -> Flag:
        return self._unverifiable(
            code,
            actual_cents,
            "a line item for it was rejected, so the LES amount is incomplete; "
            "correct the item and recompute",
        )

    def _unverifiable(self, code: ComponentCode, actual_cents: int, reason: str) -> Flag:
        label = description_for(code)
        return Flag(
            component=code,
            flag_code=f"{code.value}_{FlagKind.UNVERIFIABLE.value}",
            kind=FlagKind.UNVERIFIABLE,
            severity=Severity.YELLOW,
            delta_cents=0,
            expected_cents=0,
            actual_cents=actual_cents,
            band=self.policy.band_for(code.value),
            headline=f"{label} could not be verified",
            message=f"{label} requires manual verification: {reason}.",
            suggestion=(
                f"Verify the {label} amount with your finance office using the official "
                "rate tables for your location and rank."
            ),
            verifiable=False,
        )

    @staticmethod
    def _profile_context(code: ComponentCode, expected: ExpectedPaySnapshot) -> str:
        profile = expected.profile
        if code is ComponentCode.BASE_PAY:
            return f" for {profile.paygrade} with {profile.years_of_service} years of service"
        if code in (ComponentCode.BAH, ComponentCode.COLA):
            deps = "with" if profile.with_dependents else "without"
            return f" for {profile.paygrade} {deps} dependents at {profile.location_code}"
        if code is ComponentCode.BAS:
            return f" for {profile.paygrade}"
        return ""

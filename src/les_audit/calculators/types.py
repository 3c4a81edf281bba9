"""Type definitions for the reconciliation pipeline.

All money is integer cents. Every type here is an immutable value object;
the pipeline stages pass them along and never mutate their inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from les_audit.config import ToleranceBand


class Section(str, Enum):
    """Pay statement sections."""

    ALLOWANCE = "ALLOWANCE"
    DEDUCTION = "DEDUCTION"
    TAX = "TAX"
    ALLOTMENT = "ALLOTMENT"
    OTHER = "OTHER"


class ComponentCode(str, Enum):
    """Canonical line codes. OTHER covers every unrecognized raw code."""

    BASE_PAY = "BASE_PAY"
    BAH = "BAH"
    BAS = "BAS"
    COLA = "COLA"
    SDAP = "SDAP"
    HFP_IDP = "HFP_IDP"
    FSA = "FSA"
    FLPP = "FLPP"
    SGLI = "SGLI"
    TSP = "TSP"
    DENTAL = "DENTAL"
    SBP = "SBP"
    FITW = "FITW"
    FICA = "FICA"
    MEDICARE = "MEDICARE"
    SITW = "SITW"
    ALLOT = "ALLOT"
    NET_PAY = "NET_PAY"
    OTHER = "OTHER"


SPECIAL_PAY_CODES = frozenset(
    {ComponentCode.SDAP, ComponentCode.HFP_IDP, ComponentCode.FSA, ComponentCode.FLPP}
)

# Checks derived from the other lines; excluded from the net delta.
CROSS_CHECK_CODES = frozenset({ComponentCode.NET_PAY})


class Severity(str, Enum):
    """Flag severity."""

    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"

    @property
    def rank(self) -> int:
        """Sort rank, most severe first."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.RED: 0, Severity.YELLOW: 1, Severity.GREEN: 2}

# Warning codes meaning an expected amount could not be established.
UNRESOLVED_WARNING_CODES = frozenset({"RATE_NOT_FOUND", "RATE_INTEGRITY_FAULT"})


class FlagKind(str, Enum):
    """What a flag says about its component."""

    CORRECT = "CORRECT"
    MISMATCH = "MISMATCH"
    MISSING = "MISSING"
    UNVERIFIABLE = "UNVERIFIABLE"


class Confidence(str, Enum):
    """How far the reference data can be trusted for one result."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class SpecialPayEligibility:
    """A special pay the member is eligible for."""

    code: ComponentCode
    monthly_override_cents: int | None = None


@dataclass(frozen=True)
class ProfileSnapshot:
    """Point-in-time copy of the profile fields needed to resolve rates."""

    paygrade: str  # normalized, e.g. E05, W02, O03
    with_dependents: bool
    years_of_service: int
    location_code: str | None = None
    special_pays: tuple[SpecialPayEligibility, ...] = ()
    tsp_contribution_percent: Decimal | None = None  # 0.05 == 5%
    sgli_coverage_cents: int | None = None
    dental_premium_cents: int | None = None  # member-declared, from the enrollment

    @property
    def member_category(self) -> str:
        return "officer" if self.paygrade[0] in ("O", "W") else "enlisted"

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-safe dict (stable key order)."""
        return {
            "paygrade": self.paygrade,
            "with_dependents": self.with_dependents,
            "years_of_service": self.years_of_service,
            "location_code": self.location_code,
            "special_pays": [
                {"code": sp.code.value, "monthly_override_cents": sp.monthly_override_cents}
                for sp in self.special_pays
            ],
            "tsp_contribution_percent": (
                str(self.tsp_contribution_percent)
                if self.tsp_contribution_percent is not None
                else None
            ),
            "sgli_coverage_cents": self.sgli_coverage_cents,
            "dental_premium_cents": self.dental_premium_cents,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProfileSnapshot:
        tsp = data.get("tsp_contribution_percent")
        return cls(
            paygrade=data["paygrade"],
            with_dependents=bool(data["with_dependents"]),
            years_of_service=int(data["years_of_service"]),
            location_code=data.get("location_code"),
            special_pays=tuple(
                SpecialPayEligibility(
                    code=ComponentCode(sp["code"]),
                    monthly_override_cents=sp.get("monthly_override_cents"),
                )
                for sp in data.get("special_pays", [])
            ),
            tsp_contribution_percent=Decimal(tsp) if tsp is not None else None,
            sgli_coverage_cents=data.get("sgli_coverage_cents"),
            dental_premium_cents=data.get("dental_premium_cents"),
        )


@dataclass(frozen=True)
class RateKey:
    """Component-specific lookup key. Unset fields are not part of the key."""

    paygrade: str | None = None
    location_code: str | None = None
    with_dependents: bool | None = None
    yos_bracket: int | None = None
    category: str | None = None
    coverage_cents: int | None = None

    def encode(self) -> str:
        """Deterministic string form, as stored in rate_table_entry.rate_key."""
        parts = []
        if self.category is not None:
            parts.append(f"category={self.category}")
        if self.location_code is not None:
            parts.append(f"location={self.location_code.upper()}")
        if self.paygrade is not None:
            parts.append(f"paygrade={self.paygrade}")
        if self.with_dependents is not None:
            parts.append(f"dependents={int(self.with_dependents)}")
        if self.yos_bracket is not None:
            parts.append(f"yos={self.yos_bracket}")
        if self.coverage_cents is not None:
            parts.append(f"coverage={self.coverage_cents}")
        return "|".join(parts) if parts else "*"

    def __str__(self) -> str:
        return self.encode()


@dataclass(frozen=True)
class RateRecord:
    """A published reference rate, detached from any session."""

    component: str
    rate_key: str
    effective_date: date
    amount_cents: int


@dataclass(frozen=True)
class DataQualityWarning:
    """Something about the reference data or profile the member should know."""

    code: str  # RATE_NOT_FOUND, RATE_FALLBACK_USED, RANK_YOS_IMPLAUSIBLE, ...
    message: str
    component: ComponentCode | None = None

    @property
    def degrades_result(self) -> bool:
        """True when an expected amount could not be established."""
        return self.code in UNRESOLVED_WARNING_CODES

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "component": self.component.value if self.component else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DataQualityWarning:
        component = data.get("component")
        return cls(
            code=data["code"],
            message=data["message"],
            component=ComponentCode(component) if component else None,
        )


@dataclass(frozen=True)
class ExpectedComponent:
    """Expected monthly amount for one component."""

    component: ComponentCode
    amount_cents: int
    resolved: bool = True
    source: str = "rate_table"  # rate_table | member_override | derived | unresolved
    effective_date: date | None = None
    used_fallback: bool = False


@dataclass(frozen=True)
class ExpectedPaySnapshot:
    """Expected pay for one (profile, month, year). Never updated in place."""

    month: int
    year: int
    profile: ProfileSnapshot
    components: tuple[ExpectedComponent, ...] = ()
    warnings: tuple[DataQualityWarning, ...] = ()

    def get(self, component: ComponentCode) -> ExpectedComponent | None:
        for item in self.components:
            if item.component == component:
                return item
        return None

    @property
    def amounts(self) -> dict[ComponentCode, int]:
        return {item.component: item.amount_cents for item in self.components}

    @property
    def is_complete(self) -> bool:
        return all(item.resolved for item in self.components)

    def to_dict(self) -> dict[str, Any]:
        return {
            "month": self.month,
            "year": self.year,
            "profile": self.profile.to_dict(),
            "components": [
                {
                    "component": item.component.value,
                    "amount_cents": item.amount_cents,
                    "resolved": item.resolved,
                    "source": item.source,
                    "effective_date": (
                        item.effective_date.isoformat() if item.effective_date else None
                    ),
                    "used_fallback": item.used_fallback,
                }
                for item in self.components
            ],
            "warnings": [w.to_dict() for w in self.warnings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExpectedPaySnapshot:
        return cls(
            month=data["month"],
            year=data["year"],
            profile=ProfileSnapshot.from_dict(data["profile"]),
            components=tuple(
                ExpectedComponent(
                    component=ComponentCode(item["component"]),
                    amount_cents=item["amount_cents"],
                    resolved=item["resolved"],
                    source=item["source"],
                    effective_date=(
                        date.fromisoformat(item["effective_date"])
                        if item.get("effective_date")
                        else None
                    ),
                    used_fallback=item.get("used_fallback", False),
                )
                for item in data.get("components", [])
            ),
            warnings=tuple(DataQualityWarning.from_dict(w) for w in data.get("warnings", [])),
        )


@dataclass(frozen=True)
class RawLineItem:
    """A line item as the member (or an upstream extractor) supplied it."""

    code: str
    amount_cents: int | None
    description: str | None = None


@dataclass(frozen=True)
class ActualLineItem:
    """A normalized line item."""

    raw_code: str
    code: ComponentCode
    section: Section
    amount_cents: int
    description: str | None = None


@dataclass(frozen=True)
class Flag:
    """One discrepancy finding for one component."""

    component: ComponentCode
    flag_code: str
    kind: FlagKind
    severity: Severity
    delta_cents: int  # actual - expected
    expected_cents: int
    actual_cents: int
    band: ToleranceBand
    headline: str  # no amounts; safe for masked views
    message: str
    suggestion: str
    verifiable: bool = True
    resolved: bool = False


@dataclass(frozen=True)
class WaterfallRow:
    """Expected vs actual for one reconciled component."""

    component: ComponentCode
    expected_cents: int
    actual_cents: int
    delta_cents: int
    severity: Severity
    verifiable: bool


def net_delta(rows: Iterable[WaterfallRow]) -> int:
    """Sum of verifiable component deltas. Cross-checks such as net pay are left out."""
    return sum(
        row.delta_cents
        for row in rows
        if row.verifiable and row.component not in CROSS_CHECK_CODES
    )


@dataclass(frozen=True)
class ReconciliationResult:
    """Everything the reconciliation engine derives from one (snapshot, items)."""

    flags: tuple[Flag, ...]
    waterfall: tuple[WaterfallRow, ...]
    section_totals: dict[str, int] = field(default_factory=dict)
    confidence: Confidence = Confidence.HIGH
    warnings: tuple[DataQualityWarning, ...] = ()

    @property
    def net_delta_cents(self) -> int:
        return net_delta(self.waterfall)

"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from les_audit.calculators.normalizer import InvalidAmountError
from les_audit.calculators.profile import InvalidInputError
from les_audit.calculators.types import (
    ComponentCode,
    ProfileSnapshot,
    RawLineItem,
    SpecialPayEligibility,
)
from les_audit.models import Audit
from les_audit.services.tier_policy import AuditView, Tier


# ============================================================================
# Request schemas
# ============================================================================


class SpecialPayIn(BaseModel):
    """A declared special pay."""

    code: str
    monthly_override_cents: int | None = Field(default=None, ge=0)


class ProfileIn(BaseModel):
    """Profile fields needed to resolve rates."""

    paygrade: str
    with_dependents: bool
    years_of_service: int = Field(ge=0, le=50)
    location_code: str | None = None
    special_pays: list[SpecialPayIn] = Field(default_factory=list)
    tsp_contribution_percent: Decimal | None = Field(default=None, ge=0, le=1)
    sgli_coverage_cents: int | None = Field(default=None, ge=0)
    dental_premium_cents: int | None = Field(default=None, ge=0)

    def to_snapshot(self) -> ProfileSnapshot:
        special_pays = []
        for sp in self.special_pays:
            try:
                code = ComponentCode(sp.code.strip().upper())
            except ValueError as exc:
                raise InvalidInputError("special_pays", f"unknown code '{sp.code}'") from exc
            special_pays.append(
                SpecialPayEligibility(code=code, monthly_override_cents=sp.monthly_override_cents)
            )
        return ProfileSnapshot(
            paygrade=self.paygrade,
            with_dependents=self.with_dependents,
            years_of_service=self.years_of_service,
            location_code=self.location_code,
            special_pays=tuple(special_pays),
            tsp_contribution_percent=self.tsp_contribution_percent,
            sgli_coverage_cents=self.sgli_coverage_cents,
            dental_premium_cents=self.dental_premium_cents,
        )


class LineItemIn(BaseModel):
    """A line item as read off the LES."""

    code: str
    amount_cents: int | None = None
    description: str | None = None

    def to_raw(self) -> RawLineItem:
        return RawLineItem(code=self.code, amount_cents=self.amount_cents, description=self.description)


class ComputeRequest(BaseModel):
    """Stateless compute request. Without a profile the stored one is used."""

    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2000, le=2100)
    profile: ProfileIn | None = None
    line_items: list[LineItemIn] = Field(default_factory=list)
    net_pay_cents: int | None = Field(default=None, ge=0, description="Net amount paid, if known")


class AuditCreate(BaseModel):
    """Schema for creating a draft audit."""

    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2000, le=2100)
    profile: ProfileIn | None = None
    line_items: list[LineItemIn] = Field(default_factory=list)
    net_pay_cents: int | None = Field(default=None, ge=0, description="Net amount paid, if known")


class LineItemsUpdate(BaseModel):
    """Replace all line items on an audit."""

    line_items: list[LineItemIn]
    net_pay_cents: int | None = Field(default=None, ge=0)
    expected_version: int | None = None


class FlagResolveRequest(BaseModel):
    resolved: bool = True


# ============================================================================
# Response schemas
# ============================================================================


class LineItemResponse(BaseModel):
    """Normalized line item."""

    model_config = ConfigDict(from_attributes=True)

    raw_code: str
    code: str
    section: str
    amount_cents: int
    description: str | None = None


class RejectedLineItem(BaseModel):
    """A line item that failed validation and was left out."""

    index: int | None
    raw_code: str
    reason: str

    @classmethod
    def from_error(cls, error: InvalidAmountError) -> "RejectedLineItem":
        return cls(index=error.index, raw_code=error.raw_code, reason=error.reason)


class FlagResponse(BaseModel):
    """A flag as the caller's tier allows them to see it."""

    flag_id: str | None = None
    component: str
    flag_code: str
    severity: str
    headline: str
    message: str
    suggestion: str
    variance_bucket: str
    verifiable: bool
    resolved: bool
    delta_cents: int | None = None
    expected_cents: int | None = None
    actual_cents: int | None = None


class WaterfallRowResponse(BaseModel):
    component: str
    expected_cents: int
    actual_cents: int
    delta_cents: int
    severity: str
    verifiable: bool


class WarningResponse(BaseModel):
    code: str
    message: str
    component: str | None = None


class ReconciliationResponse(BaseModel):
    """Masked reconciliation output."""

    tier: str
    masked: bool
    confidence: str | None = None
    estimated: bool = Field(description="True when reference data was incomplete")
    flags: list[FlagResponse]
    hidden_count: int = 0
    waterfall: list[WaterfallRowResponse] | None = None
    section_totals: dict[str, int] | None = None
    net_delta_cents: int | None = None
    warnings: list[WarningResponse] = Field(default_factory=list)

    @classmethod
    def from_view(cls, view: AuditView, tier: Tier) -> "ReconciliationResponse":
        return cls(
            tier=tier.value,
            masked=view.masked,
            confidence=view.confidence.value if view.confidence else None,
            estimated=bool(view.confidence) and view.confidence.value != "high",
            flags=[
                FlagResponse(
                    flag_id=f.flag_id,
                    component=f.component.value,
                    flag_code=f.flag_code,
                    severity=f.severity.value,
                    headline=f.headline,
                    message=f.message,
                    suggestion=f.suggestion,
                    variance_bucket=f.variance_bucket,
                    verifiable=f.verifiable,
                    resolved=f.resolved,
                    delta_cents=f.delta_cents,
                    expected_cents=f.expected_cents,
                    actual_cents=f.actual_cents,
                )
                for f in view.flags
            ],
            hidden_count=view.hidden_count,
            waterfall=(
                [
                    WaterfallRowResponse(
                        component=row.component.value,
                        expected_cents=row.expected_cents,
                        actual_cents=row.actual_cents,
                        delta_cents=row.delta_cents,
                        severity=row.severity.value,
                        verifiable=row.verifiable,
                    )
                    for row in view.waterfall
                ]
                if view.waterfall is not None
                else None
            ),
            section_totals=view.section_totals,
            net_delta_cents=view.net_delta_cents,
            warnings=[WarningResponse(**w.to_dict()) for w in view.warnings],
        )


class ComputeResponse(BaseModel):
    """Stateless compute response."""

    month: int
    year: int
    line_items: list[LineItemResponse]
    rejected_items: list[RejectedLineItem] = Field(default_factory=list)
    result: ReconciliationResponse


class AuditSummary(BaseModel):
    """Audit header fields."""

    model_config = ConfigDict(from_attributes=True)

    audit_id: UUID
    month: int
    year: int
    status: str
    confidence: str | None = None
    version: int
    net_pay_cents: int | None = None
    cloned_from_audit_id: UUID | None = None
    computed_at: datetime | None = None
    saved_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class AuditListResponse(BaseModel):
    items: list[AuditSummary]
    total: int


class AuditResponse(AuditSummary):
    """Full audit with its line items and tier-masked result."""

    profile: dict[str, Any]
    line_items: list[LineItemResponse]
    result: ReconciliationResponse

    @classmethod
    def build(cls, audit: Audit, view: AuditView, tier: Tier) -> "AuditResponse":
        summary = AuditSummary.model_validate(audit)
        return cls(
            **summary.model_dump(),
            profile=audit.profile_snapshot,
            line_items=[LineItemResponse.model_validate(row) for row in audit.line_items],
            result=ReconciliationResponse.from_view(view, tier),
        )


class SaveResponse(BaseModel):
    """Save outcome."""

    audit: AuditResponse
    replayed: bool = False
    quota_count: int | None = None
    period: str | None = None


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None

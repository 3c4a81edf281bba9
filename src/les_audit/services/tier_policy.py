"""Tier policy gate.

The only place that decides what a caller may see. Every response that
carries flags goes through mask(); nothing else in the package branches
on tier.

Free-tier rules, in order:
1. Keep the N most severe flags (red, yellow, green; ties by |delta|)
2. Replace cent-exact numbers with a severity-derived variance bucket
3. Drop the waterfall and section totals
4. Report how many flags were hidden

Any tier value that is not exactly premium or staff is free.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Sequence

from les_audit.calculators.reconciliation import format_dollars
from les_audit.calculators.types import (
    ComponentCode,
    Confidence,
    DataQualityWarning,
    Flag,
    ReconciliationResult,
    Severity,
    WaterfallRow,
)
from les_audit.config import TierPolicy, ToleranceBand

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    """Subscription tiers."""

    FREE = "free"
    PREMIUM = "premium"
    STAFF = "staff"

    @classmethod
    def parse(cls, value: Any) -> Tier:
        """Parse a tier value. Unknown, empty or malformed values are FREE."""
        if isinstance(value, Tier):
            return value
        if not isinstance(value, str):
            return cls.FREE
        normalized = value.strip().lower()
        if normalized == cls.PREMIUM.value:
            return cls.PREMIUM
        if normalized == cls.STAFF.value:
            return cls.STAFF
        return cls.FREE

    @property
    def full_fidelity(self) -> bool:
        return self in (Tier.PREMIUM, Tier.STAFF)


@dataclass(frozen=True)
class VarianceBucket:
    """Range of |delta| a flag's severity implies. max_cents None means unbounded."""

    label: str
    min_cents: int
    max_cents: int | None

    def contains(self, delta_cents: int) -> bool:
        magnitude = abs(delta_cents)
        if magnitude < self.min_cents:
            return False
        return self.max_cents is None or magnitude <= self.max_cents


def variance_bucket(severity: Severity, band: ToleranceBand, verifiable: bool = True) -> VarianceBucket:
    """Bucket for a flag, derived from its severity and tolerance band."""
    if not verifiable:
        return VarianceBucket("could not be verified", 0, 0)
    green = band.green_max_cents
    yellow = band.yellow_max_cents
    if severity is Severity.GREEN:
        if green == 0:
            return VarianceBucket("exact match", 0, 0)
        return VarianceBucket(f"{format_dollars(green)} or less", 0, green)
    if severity is Severity.YELLOW:
        return VarianceBucket(
            f"{format_dollars(green + 1)}-{format_dollars(yellow)}", green + 1, yellow
        )
    return VarianceBucket(f"over {format_dollars(yellow)}", yellow + 1, None)


@dataclass(frozen=True)
class FlagView:
    """A flag as a caller sees it. Numbers are None once masked."""

    component: ComponentCode
    flag_code: str
    severity: Severity
    headline: str
    message: str
    suggestion: str
    variance_bucket: str
    verifiable: bool = True
    resolved: bool = False
    delta_cents: int | None = None
    expected_cents: int | None = None
    actual_cents: int | None = None
    flag_id: str | None = None

    @classmethod
    def from_flag(cls, flag: Flag, flag_id: str | None = None) -> FlagView:
        return cls(
            component=flag.component,
            flag_code=flag.flag_code,
            severity=flag.severity,
            headline=flag.headline,
            message=flag.message,
            suggestion=flag.suggestion,
            variance_bucket=variance_bucket(flag.severity, flag.band, flag.verifiable).label,
            verifiable=flag.verifiable,
            resolved=flag.resolved,
            delta_cents=flag.delta_cents,
            expected_cents=flag.expected_cents,
            actual_cents=flag.actual_cents,
            flag_id=flag_id,
        )

    @property
    def masked(self) -> bool:
        return self.delta_cents is None


@dataclass(frozen=True)
class AuditView:
    """Reconciliation output for one caller."""

    flags: tuple[FlagView, ...]
    confidence: Confidence | None
    warnings: tuple[DataQualityWarning, ...] = ()
    hidden_count: int = 0
    waterfall: tuple[WaterfallRow, ...] | None = None
    section_totals: dict[str, int] | None = None
    net_delta_cents: int | None = None
    masked: bool = False

    @classmethod
    def from_result(
        cls,
        result: ReconciliationResult,
        flag_ids: Sequence[str] | None = None,
    ) -> AuditView:
        """Full-fidelity view of a reconciliation result."""
        ids = list(flag_ids) if flag_ids is not None else [None] * len(result.flags)
        return cls(
            flags=tuple(FlagView.from_flag(f, fid) for f, fid in zip(result.flags, ids)),
            confidence=result.confidence,
            warnings=result.warnings,
            waterfall=result.waterfall,
            section_totals=dict(result.section_totals),
            net_delta_cents=result.net_delta_cents,
        )


def _sort_key(view: FlagView) -> tuple[int, int]:
    return (view.severity.rank, -abs(view.delta_cents or 0))


def _mask_flag(view: FlagView) -> FlagView:
    return replace(
        view,
        message=view.headline,
        delta_cents=None,
        expected_cents=None,
        actual_cents=None,
    )


def mask(view: AuditView, tier: Tier | str | None, policy: TierPolicy | None = None) -> AuditView:
    """Rewrite a view for a tier. Idempotent: mask(mask(v, t), t) == mask(v, t)."""
    tier = Tier.parse(tier)
    if tier.full_fidelity:
        return view

    policy = policy or TierPolicy()
    limit = policy.free_visible_flags

    if policy.unverifiable_counts_toward_limit:
        ranked = sorted(view.flags, key=_sort_key)
        visible = ranked[:limit]
    else:
        verifiable = sorted((f for f in view.flags if f.verifiable), key=_sort_key)
        kept = set(id(f) for f in verifiable[:limit])
        visible = sorted(
            (f for f in view.flags if not f.verifiable or id(f) in kept),
            key=_sort_key,
        )

    hidden = len(view.flags) - len(visible)
    if hidden:
        logger.debug("Free tier view hides %d of %d flags", hidden, len(view.flags))

    return AuditView(
        flags=tuple(_mask_flag(f) for f in visible),
        confidence=view.confidence,
        warnings=view.warnings,
        hidden_count=view.hidden_count + hidden,
        waterfall=None,
        section_totals=None,
        net_delta_cents=None,
        masked=True,
    )

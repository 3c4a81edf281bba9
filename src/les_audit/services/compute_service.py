"""Stateless compute pipeline: build -> normalize -> reconcile -> mask."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from les_audit.calculators.expected import ExpectedSnapshotBuilder
from les_audit.calculators.normalizer import LineItemNormalizer, NormalizationResult
from les_audit.calculators.rate_resolver import RateResolver, RateStore
from les_audit.calculators.reconciliation import ReconciliationEngine
from les_audit.calculators.types import (
    ActualLineItem,
    ExpectedPaySnapshot,
    ProfileSnapshot,
    RawLineItem,
    ReconciliationResult,
)
from les_audit.config import AuditPolicy
from les_audit.services.tier_policy import AuditView, Tier, mask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineOutput:
    """Unmasked output of one pipeline run."""

    expected: ExpectedPaySnapshot
    normalization: NormalizationResult
    result: ReconciliationResult

    @property
    def items(self) -> tuple[ActualLineItem, ...]:
        return self.normalization.items


class AuditComputeService:
    """Runs the reconciliation pipeline without persisting anything."""

    def __init__(self, rate_store: RateStore, policy: AuditPolicy | None = None):
        self.policy = policy or AuditPolicy()
        self.builder = ExpectedSnapshotBuilder(RateResolver(rate_store))
        self.normalizer = LineItemNormalizer()
        self.engine = ReconciliationEngine(self.policy.reconciliation)

    async def run(
        self,
        profile: ProfileSnapshot,
        month: int,
        year: int,
        raw_items: Sequence[RawLineItem],
        net_pay_cents: int | None = None,
    ) -> PipelineOutput:
        """Build expected pay, normalize items and reconcile.

        Invalid line items are reported in the normalization result and left
        out of the reconciliation; the rest of the audit still computes. The
        components they belong to, and net pay, come back unverifiable.
        """
        expected = await self.builder.build(profile, month, year)
        normalization = self.normalizer.normalize(raw_items)
        if normalization.rejected:
            logger.info(
                "Compute %02d/%d: %d line item(s) rejected",
                month,
                year,
                len(normalization.rejected),
            )
        return self.reconcile(expected, normalization, net_pay_cents)

    def reconcile(
        self,
        expected: ExpectedPaySnapshot,
        normalization: NormalizationResult,
        net_pay_cents: int | None = None,
    ) -> PipelineOutput:
        result = self.engine.run(
            expected,
            normalization.items,
            net_pay_cents=net_pay_cents,
            rejected_codes=normalization.rejected_codes,
        )
        return PipelineOutput(expected=expected, normalization=normalization, result=result)

    async def compute(
        self,
        profile: ProfileSnapshot,
        month: int,
        year: int,
        raw_items: Sequence[RawLineItem],
        tier: Tier | str | None,
        net_pay_cents: int | None = None,
    ) -> tuple[PipelineOutput, AuditView]:
        """Run the pipeline and mask the result for the caller's tier."""
        output = await self.run(profile, month, year, raw_items, net_pay_cents)
        view = mask(AuditView.from_result(output.result), tier, self.policy.tier)
        return output, view

"""Audit lifecycle manager - persistence and state for audits."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from les_audit.calculators.normalizer import InvalidAmountError, LineItemNormalizer
from les_audit.calculators.profile import InvalidInputError, validate_period, validate_profile
from les_audit.calculators.rate_resolver import SqlRateStore
from les_audit.calculators.reconciliation import ReconciliationEngine
from les_audit.calculators.types import (
    ActualLineItem,
    ComponentCode,
    Confidence,
    DataQualityWarning,
    ExpectedPaySnapshot,
    Flag,
    ProfileSnapshot,
    RawLineItem,
    Section,
    Severity,
    WaterfallRow,
    net_delta,
)
from les_audit.config import AuditPolicy, ToleranceBand
from les_audit.models import Audit, AuditFlag, AuditLineItem, SaveReceipt
from les_audit.models.base import utcnow
from les_audit.services.compute_service import AuditComputeService
from les_audit.services.profile_store import SqlProfileStore
from les_audit.services.quota_service import QuotaService, quota_period
from les_audit.services.retry import MAX_RETRIES, run_with_retry
from les_audit.services.state_machine import AuditStateMachine, AuditStatus, InvalidTransitionError
from les_audit.services.tier_policy import AuditView, FlagView, Tier, variance_bucket

logger = logging.getLogger(__name__)


class AuditNotFoundError(Exception):
    """Raised when an audit does not exist, is deleted, or is not the caller's."""

    def __init__(self, audit_id: UUID | str, detail: str | None = None):
        self.audit_id = str(audit_id)
        super().__init__(detail or f"Audit {audit_id} not found")


class ConcurrentModificationError(Exception):
    """Raised when an audit changed between read and write."""

    def __init__(
        self,
        audit_id: UUID | str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.audit_id = str(audit_id)
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"Audit {audit_id} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(msg)


class InvalidLineItemsError(InvalidInputError):
    """Raised when a persisted line-item edit contains invalid items."""

    def __init__(self, errors: Sequence[InvalidAmountError]):
        self.errors = list(errors)
        super().__init__("line_items", "; ".join(str(e) for e in self.errors))


@dataclass(frozen=True)
class SaveOutcome:
    """Result of a save call."""

    audit: Audit
    replayed: bool = False
    quota_count: int | None = None
    period: str | None = None


def _item_from_row(row: AuditLineItem) -> ActualLineItem:
    return ActualLineItem(
        raw_code=row.raw_code,
        code=ComponentCode(row.code),
        section=Section(row.section),
        amount_cents=row.amount_cents,
        description=row.description,
    )


def _flag_view_from_row(row: AuditFlag) -> FlagView:
    severity = Severity(row.severity)
    band = ToleranceBand(row.green_max_cents, row.yellow_max_cents)
    return FlagView(
        component=ComponentCode(row.component),
        flag_code=row.flag_code,
        severity=severity,
        headline=row.headline,
        message=row.message,
        suggestion=row.suggestion,
        variance_bucket=variance_bucket(severity, band, row.verifiable).label,
        verifiable=row.verifiable,
        resolved=row.resolved,
        delta_cents=row.delta_cents,
        expected_cents=row.expected_cents,
        actual_cents=row.actual_cents,
        flag_id=str(row.audit_flag_id),
    )


def audit_view(audit: Audit) -> AuditView:
    """Full-fidelity view of a persisted audit. Mask before returning it."""
    items = [_item_from_row(row) for row in audit.line_items]
    flags = tuple(_flag_view_from_row(row) for row in audit.flags)
    warnings: tuple[DataQualityWarning, ...] = ()
    if audit.expected_snapshot:
        warnings = ExpectedPaySnapshot.from_dict(audit.expected_snapshot).warnings

    waterfall = tuple(
        WaterfallRow(
            component=f.component,
            expected_cents=f.expected_cents,
            actual_cents=f.actual_cents,
            delta_cents=f.delta_cents,
            severity=f.severity,
            verifiable=f.verifiable,
        )
        for f in flags
    )
    return AuditView(
        flags=flags,
        confidence=Confidence(audit.confidence) if audit.confidence else None,
        warnings=warnings,
        waterfall=waterfall,
        section_totals=ReconciliationEngine.section_totals(items),
        net_delta_cents=net_delta(waterfall),
    )


def _validate_net_pay(net_pay_cents: int | None) -> None:
    if net_pay_cents is not None and net_pay_cents < 0:
        raise InvalidInputError("net_pay_cents", "cannot be negative")


class AuditLifecycleManager:
    """Owns create/edit/recompute/save/clone/delete for persisted audits.

    Every mutating operation commits its own transaction. Writes to an
    audit row go through the version column, so a stale writer fails with
    ConcurrentModificationError instead of overwriting a newer edit.

    Operations:
    - create_draft: new draft audit from a profile and raw line items
    - update_line_items: replace line items, computed -> draft
    - recompute: regenerate flags, draft/computed -> computed
    - save: quota-checked, computed -> ready_to_submit
    - clone: new draft with copied profile and line items, no flags
    - resolve_flag / soft_delete
    """

    def __init__(
        self,
        session: AsyncSession,
        policy: AuditPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        timeout_seconds: float | None = 5.0,
        retries: int = MAX_RETRIES,
    ):
        self.session = session
        self.policy = policy or AuditPolicy()
        self.clock = clock
        self.timeout_seconds = timeout_seconds
        self.retries = retries
        self.normalizer = LineItemNormalizer()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_audit(self, audit_id: UUID, user_id: str) -> Audit:
        """Load a caller's non-deleted audit with line items and flags."""
        result = await self.session.execute(
            select(Audit)
            .where(Audit.audit_id == audit_id)
            .options(selectinload(Audit.line_items), selectinload(Audit.flags))
        )
        audit = result.scalar_one_or_none()
        if audit is None or audit.user_id != user_id or audit.is_deleted:
            raise AuditNotFoundError(audit_id)
        return audit

    async def list_audits(self, user_id: str) -> list[Audit]:
        """List a caller's non-deleted audits, newest first."""
        result = await self.session.execute(
            select(Audit)
            .where(Audit.user_id == user_id, Audit.deleted_at.is_(None))
            .options(selectinload(Audit.line_items), selectinload(Audit.flags))
            .order_by(Audit.year.desc(), Audit.month.desc(), Audit.created_at.desc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_draft(
        self,
        user_id: str,
        month: int,
        year: int,
        raw_items: Sequence[RawLineItem] = (),
        profile: ProfileSnapshot | None = None,
        net_pay_cents: int | None = None,
    ) -> Audit:
        """Create a draft audit. Falls back to the stored profile."""
        validate_period(month, year)
        _validate_net_pay(net_pay_cents)
        if profile is None:
            profile = await SqlProfileStore(self.session).get_profile(user_id)
        else:
            profile = validate_profile(profile)
        items = self._normalize_strict(raw_items)

        now = self.clock()
        audit = Audit(
            user_id=user_id,
            month=month,
            year=year,
            status=AuditStatus.DRAFT.value,
            profile_snapshot=profile.to_dict(),
            net_pay_cents=net_pay_cents,
            updated_at=now,
            line_items=self._line_item_rows(items),
            flags=[],
        )
        self.session.add(audit)
        await self._commit(audit)
        logger.info("Created draft audit %s for %02d/%d", audit.audit_id, month, year)
        return audit

    async def update_line_items(
        self,
        audit_id: UUID,
        user_id: str,
        raw_items: Sequence[RawLineItem],
        net_pay_cents: int | None = None,
        expected_version: int | None = None,
    ) -> Audit:
        """Replace an audit's line items and net pay. Flags go stale; computed -> draft."""
        _validate_net_pay(net_pay_cents)
        items = self._normalize_strict(raw_items)
        audit = await self.get_audit(audit_id, user_id)
        self._check_version(audit, expected_version)

        if not AuditStateMachine.can_edit(audit.status):
            AuditStateMachine.validate_transition(audit.status, AuditStatus.DRAFT)

        audit.line_items.clear()
        audit.flags.clear()
        await self._flush(audit)

        if audit.status == AuditStatus.COMPUTED:
            AuditStateMachine.validate_transition(audit.status, AuditStatus.DRAFT)
        audit.status = AuditStatus.DRAFT.value
        audit.net_pay_cents = net_pay_cents
        audit.confidence = None
        audit.expected_snapshot = None
        audit.computed_at = None
        audit.updated_at = self.clock()
        audit.line_items.extend(self._line_item_rows(items))
        await self._commit(audit)
        logger.info("Replaced line items on audit %s (%d items)", audit.audit_id, len(items))
        return audit

    async def recompute(self, audit_id: UUID, user_id: str) -> Audit:
        """Regenerate expected pay and flags from the audit's current inputs."""
        audit = await self.get_audit(audit_id, user_id)
        if not AuditStateMachine.can_recompute(audit.status):
            AuditStateMachine.validate_transition(audit.status, AuditStatus.COMPUTED)

        profile = ProfileSnapshot.from_dict(audit.profile_snapshot)
        compute = AuditComputeService(SqlRateStore(self.session), self.policy)
        expected = await compute.builder.build(profile, audit.month, audit.year)
        items = [_item_from_row(row) for row in audit.line_items]
        result = compute.engine.run(expected, items, net_pay_cents=audit.net_pay_cents)

        audit.flags.clear()
        await self._flush(audit)

        now = self.clock()
        AuditStateMachine.validate_transition(audit.status, AuditStatus.COMPUTED)
        audit.status = AuditStatus.COMPUTED.value
        audit.expected_snapshot = expected.to_dict()
        audit.confidence = result.confidence.value
        audit.computed_at = now
        audit.updated_at = now
        audit.flags.extend(self._flag_rows(result.flags))
        await self._commit(audit)
        logger.info(
            "Recomputed audit %s: %d flag(s), confidence %s",
            audit.audit_id,
            len(result.flags),
            result.confidence.value,
        )
        return audit

    async def save(
        self,
        audit_id: UUID,
        user_id: str,
        tier: Tier | str | None,
        idempotency_key: str | None = None,
    ) -> SaveOutcome:
        """Save a computed audit: quota check, then computed -> ready_to_submit.

        The quota increment, the status change and the save receipt commit
        together or not at all. Free-tier saves consume one unit of the
        current calendar month's quota; premium and staff saves are not
        counted. With an idempotency key a replayed save returns the
        original outcome without touching the counter, and transient store
        failures are retried.

        Raises:
            QuotaExceededError: Free tier is at its period limit
            InvalidTransitionError: Audit is not computed
        """
        tier = Tier.parse(tier)

        async def attempt() -> SaveOutcome:
            try:
                return await self._save_once(audit_id, user_id, tier, idempotency_key)
            except Exception:
                await self.session.rollback()
                raise

        if idempotency_key is None:
            return await attempt()
        return await run_with_retry(
            self.session,
            "save",
            attempt,
            retries=self.retries,
            timeout_seconds=self.timeout_seconds,
        )

    async def clone(self, audit_id: UUID, user_id: str) -> Audit:
        """Create a new draft copying profile and line items, never flags."""

        async def attempt() -> Audit:
            try:
                return await self._clone_once(audit_id, user_id)
            except Exception:
                await self.session.rollback()
                raise

        return await run_with_retry(
            self.session,
            "clone",
            attempt,
            retries=self.retries,
            timeout_seconds=self.timeout_seconds,
        )

    async def resolve_flag(
        self,
        audit_id: UUID,
        flag_id: UUID,
        user_id: str,
        resolved: bool = True,
    ) -> Audit:
        """Mark a flag resolved (or unresolved) on a computed audit.

        Raises:
            InvalidTransitionError: Audit is ready to submit; its flags are frozen
            InvalidInputError: Audit is a draft and has no current flags
        """
        audit = await self.get_audit(audit_id, user_id)
        if audit.status == AuditStatus.READY_TO_SUBMIT:
            raise InvalidTransitionError(
                audit.status,
                audit.status,
                "flags are frozen once an audit is ready to submit; clone it to make changes",
            )
        if not AuditStateMachine.can_resolve_flags(audit.status):
            raise InvalidInputError("flag_id", "audit has no computed flags")
        flag = next((f for f in audit.flags if f.audit_flag_id == flag_id), None)
        if flag is None:
            raise AuditNotFoundError(audit_id, f"Flag {flag_id} not found on audit {audit_id}")
        flag.resolved = resolved
        audit.updated_at = self.clock()
        await self._commit(audit)
        return audit

    async def soft_delete(self, audit_id: UUID, user_id: str) -> None:
        """Hide an audit from all reads. Rows are kept."""
        audit = await self.get_audit(audit_id, user_id)
        now = self.clock()
        audit.deleted_at = now
        audit.updated_at = now
        await self._commit(audit)
        logger.info("Soft-deleted audit %s", audit.audit_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _save_once(
        self,
        audit_id: UUID,
        user_id: str,
        tier: Tier,
        idempotency_key: str | None,
    ) -> SaveOutcome:
        if idempotency_key is not None:
            receipt = await self._find_receipt(user_id, idempotency_key)
            if receipt is not None:
                if receipt.audit_id != audit_id:
                    raise InvalidInputError(
                        "Idempotency-Key", "key was already used for a different audit"
                    )
                audit = await self.get_audit(audit_id, user_id)
                logger.info("Replayed save of audit %s", audit_id)
                return SaveOutcome(
                    audit=audit,
                    replayed=True,
                    quota_count=receipt.quota_count,
                    period=receipt.period,
                )

        audit = await self.get_audit(audit_id, user_id)
        AuditStateMachine.validate_transition(audit.status, AuditStatus.READY_TO_SUBMIT)

        now = self.clock()
        period = quota_period(now)
        count = None
        if not tier.full_fidelity:
            count = await QuotaService(self.session).consume(
                user_id,
                self.policy.quota.route,
                period,
                self.policy.quota.free_saves_per_period,
            )

        audit.status = AuditStatus.READY_TO_SUBMIT.value
        audit.saved_at = now
        audit.updated_at = now
        if idempotency_key is not None:
            self.session.add(
                SaveReceipt(
                    user_id=user_id,
                    idempotency_key=idempotency_key,
                    audit_id=audit.audit_id,
                    period=period,
                    quota_count=count,
                )
            )
        await self._commit(audit)
        logger.info("Saved audit %s (tier=%s, period=%s)", audit.audit_id, tier.value, period)
        return SaveOutcome(audit=audit, quota_count=count, period=period)

    async def _clone_once(self, audit_id: UUID, user_id: str) -> Audit:
        source = await self.get_audit(audit_id, user_id)
        now = self.clock()
        clone = Audit(
            user_id=user_id,
            month=source.month,
            year=source.year,
            status=AuditStatus.DRAFT.value,
            profile_snapshot=dict(source.profile_snapshot),
            net_pay_cents=source.net_pay_cents,
            cloned_from_audit_id=source.audit_id,
            updated_at=now,
            line_items=[
                AuditLineItem(
                    position=row.position,
                    raw_code=row.raw_code,
                    description=row.description,
                    code=row.code,
                    section=row.section,
                    amount_cents=row.amount_cents,
                )
                for row in source.line_items
            ],
            flags=[],
        )
        self.session.add(clone)
        await self._commit(clone)
        logger.info("Cloned audit %s into %s", source.audit_id, clone.audit_id)
        return clone

    async def _find_receipt(self, user_id: str, idempotency_key: str) -> SaveReceipt | None:
        result = await self.session.execute(
            select(SaveReceipt).where(
                SaveReceipt.user_id == user_id,
                SaveReceipt.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    def _normalize_strict(self, raw_items: Sequence[RawLineItem]) -> list[ActualLineItem]:
        result = self.normalizer.normalize(raw_items)
        if result.rejected:
            raise InvalidLineItemsError(result.rejected)
        return list(result.items)

    @staticmethod
    def _line_item_rows(items: Sequence[ActualLineItem]) -> list[AuditLineItem]:
        return [
            AuditLineItem(
                position=position,
                raw_code=item.raw_code,
                description=item.description,
                code=item.code.value,
                section=item.section.value,
                amount_cents=item.amount_cents,
            )
            for position, item in enumerate(items)
        ]

    @staticmethod
    def _flag_rows(flags: Sequence[Flag]) -> list[AuditFlag]:
        return [
            AuditFlag(
                position=position,
                component=flag.component.value,
                flag_code=flag.flag_code,
                severity=flag.severity.value,
                delta_cents=flag.delta_cents,
                expected_cents=flag.expected_cents,
                actual_cents=flag.actual_cents,
                green_max_cents=flag.band.green_max_cents,
                yellow_max_cents=flag.band.yellow_max_cents,
                verifiable=flag.verifiable,
                headline=flag.headline,
                message=flag.message,
                suggestion=flag.suggestion,
                resolved=flag.resolved,
            )
            for position, flag in enumerate(flags)
        ]

    @staticmethod
    def _check_version(audit: Audit, expected_version: int | None) -> None:
        if expected_version is not None and audit.version != expected_version:
            raise ConcurrentModificationError(audit.audit_id, expected_version, audit.version)

    async def _flush(self, audit: Audit) -> None:
        audit_id = audit.audit_id
        try:
            await self.session.flush()
        except StaleDataError as exc:
            await self.session.rollback()
            raise ConcurrentModificationError(audit_id) from exc

    async def _commit(self, audit: Audit) -> None:
        audit_id = audit.audit_id
        try:
            await self.session.flush()
        except StaleDataError as exc:
            await self.session.rollback()
            raise ConcurrentModificationError(audit_id) from exc
        await self.session.commit()

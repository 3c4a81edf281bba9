"""LES audit API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Header, Path, Response, status

from les_audit.api.dependencies import CallerTier, DbSession, Lifecycle, Policy, UserId
from les_audit.api.schemas import (
    AuditCreate,
    AuditListResponse,
    AuditResponse,
    AuditSummary,
    ComputeRequest,
    ComputeResponse,
    ErrorResponse,
    FlagResolveRequest,
    LineItemResponse,
    LineItemsUpdate,
    ReconciliationResponse,
    RejectedLineItem,
    SaveResponse,
)
from les_audit.calculators.rate_resolver import SqlRateStore
from les_audit.config import AuditPolicy
from les_audit.models import Audit
from les_audit.services.audit_service import audit_view
from les_audit.services.compute_service import AuditComputeService
from les_audit.services.profile_store import SqlProfileStore
from les_audit.services.tier_policy import Tier, mask

router = APIRouter(prefix="/les", tags=["les-audit"])


def _audit_response(audit: Audit, tier: Tier, policy: AuditPolicy) -> AuditResponse:
    view = mask(audit_view(audit), tier, policy.tier)
    return AuditResponse.build(audit, view, tier)


# ============================================================================
# Stateless compute
# ============================================================================


@router.post(
    "/audits/compute",
    response_model=ComputeResponse,
    responses={401: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def compute_audit(
    db: DbSession,
    user_id: UserId,
    tier: CallerTier,
    policy: Policy,
    payload: ComputeRequest,
) -> ComputeResponse:
    """Reconcile line items against expected pay. Persists nothing.

    Invalid line items are reported in rejected_items; everything else
    still reconciles.
    """
    if payload.profile is not None:
        profile = payload.profile.to_snapshot()
    else:
        profile = await SqlProfileStore(db).get_profile(user_id)

    service = AuditComputeService(SqlRateStore(db), policy)
    output, view = await service.compute(
        profile,
        payload.month,
        payload.year,
        [item.to_raw() for item in payload.line_items],
        tier,
        net_pay_cents=payload.net_pay_cents,
    )
    return ComputeResponse(
        month=payload.month,
        year=payload.year,
        line_items=[
            LineItemResponse(
                raw_code=item.raw_code,
                code=item.code.value,
                section=item.section.value,
                amount_cents=item.amount_cents,
                description=item.description,
            )
            for item in output.items
        ],
        rejected_items=[RejectedLineItem.from_error(e) for e in output.normalization.rejected],
        result=ReconciliationResponse.from_view(view, tier),
    )


# ============================================================================
# Persisted audits
# ============================================================================


@router.post(
    "/audits",
    response_model=AuditResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
async def create_audit(
    manager: Lifecycle,
    user_id: UserId,
    tier: CallerTier,
    policy: Policy,
    payload: AuditCreate,
) -> AuditResponse:
    """Create a new audit in draft status."""
    audit = await manager.create_draft(
        user_id,
        payload.month,
        payload.year,
        raw_items=[item.to_raw() for item in payload.line_items],
        profile=payload.profile.to_snapshot() if payload.profile else None,
        net_pay_cents=payload.net_pay_cents,
    )
    return _audit_response(audit, tier, policy)


@router.get("/audits", response_model=AuditListResponse)
async def list_audits(manager: Lifecycle, user_id: UserId) -> AuditListResponse:
    """List the caller's audits."""
    audits = await manager.list_audits(user_id)
    return AuditListResponse(
        items=[AuditSummary.model_validate(a) for a in audits],
        total=len(audits),
    )


@router.get(
    "/audits/{audit_id}",
    response_model=AuditResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_audit(
    manager: Lifecycle,
    user_id: UserId,
    tier: CallerTier,
    policy: Policy,
    audit_id: Annotated[UUID, Path()],
) -> AuditResponse:
    """Get an audit, masked for the caller's tier."""
    audit = await manager.get_audit(audit_id, user_id)
    return _audit_response(audit, tier, policy)


@router.put(
    "/audits/{audit_id}/line-items",
    response_model=AuditResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def replace_line_items(
    manager: Lifecycle,
    user_id: UserId,
    tier: CallerTier,
    policy: Policy,
    audit_id: Annotated[UUID, Path()],
    payload: LineItemsUpdate,
) -> AuditResponse:
    """Replace line items. The audit returns to draft until recomputed."""
    audit = await manager.update_line_items(
        audit_id,
        user_id,
        [item.to_raw() for item in payload.line_items],
        net_pay_cents=payload.net_pay_cents,
        expected_version=payload.expected_version,
    )
    return _audit_response(audit, tier, policy)


@router.post(
    "/audits/{audit_id}/recompute",
    response_model=AuditResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def recompute_audit(
    manager: Lifecycle,
    user_id: UserId,
    tier: CallerTier,
    policy: Policy,
    audit_id: Annotated[UUID, Path()],
) -> AuditResponse:
    """Regenerate flags from the current line items."""
    audit = await manager.recompute(audit_id, user_id)
    return _audit_response(audit, tier, policy)


@router.post(
    "/audits/{audit_id}/save",
    response_model=SaveResponse,
    responses={
        402: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def save_audit(
    manager: Lifecycle,
    user_id: UserId,
    tier: CallerTier,
    policy: Policy,
    audit_id: Annotated[UUID, Path()],
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> SaveResponse:
    """Save a computed audit (quota-checked for the free tier)."""
    outcome = await manager.save(audit_id, user_id, tier, idempotency_key=idempotency_key)
    return SaveResponse(
        audit=_audit_response(outcome.audit, tier, policy),
        replayed=outcome.replayed,
        quota_count=outcome.quota_count,
        period=outcome.period,
    )


@router.post(
    "/audits/{audit_id}/clone",
    response_model=AuditResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def clone_audit(
    manager: Lifecycle,
    user_id: UserId,
    tier: CallerTier,
    policy: Policy,
    audit_id: Annotated[UUID, Path()],
) -> AuditResponse:
    """Clone an audit into a new draft for re-auditing."""
    clone = await manager.clone(audit_id, user_id)
    return _audit_response(clone, tier, policy)


@router.post(
    "/audits/{audit_id}/flags/{flag_id}/resolve",
    response_model=AuditResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def resolve_flag(
    manager: Lifecycle,
    user_id: UserId,
    tier: CallerTier,
    policy: Policy,
    audit_id: Annotated[UUID, Path()],
    flag_id: Annotated[UUID, Path()],
    payload: FlagResolveRequest | None = None,
) -> AuditResponse:
    """Mark a flag resolved."""
    resolved = payload.resolved if payload is not None else True
    audit = await manager.resolve_flag(audit_id, flag_id, user_id, resolved=resolved)
    return _audit_response(audit, tier, policy)


@router.delete(
    "/audits/{audit_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_audit(
    manager: Lifecycle,
    user_id: UserId,
    audit_id: Annotated[UUID, Path()],
) -> Response:
    """Soft-delete an audit."""
    await manager.soft_delete(audit_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

"""Services: audit lifecycle, quota, tier policy, collaborator stores."""

from les_audit.services.audit_service import (
    AuditLifecycleManager,
    AuditNotFoundError,
    ConcurrentModificationError,
    InvalidLineItemsError,
    SaveOutcome,
    audit_view,
)
from les_audit.services.compute_service import AuditComputeService, PipelineOutput
from les_audit.services.entitlements import SqlEntitlementService
from les_audit.services.profile_store import ProfileNotFoundError, SqlProfileStore
from les_audit.services.quota_service import (
    QuotaDecision,
    QuotaExceededError,
    QuotaService,
    quota_period,
)
from les_audit.services.retry import TransientStoreError, run_with_retry
from les_audit.services.state_machine import (
    AuditStateMachine,
    AuditStatus,
    InvalidTransitionError,
)
from les_audit.services.tier_policy import AuditView, FlagView, Tier, mask, variance_bucket

__all__ = [
    "AuditComputeService",
    "AuditLifecycleManager",
    "AuditNotFoundError",
    "AuditStateMachine",
    "AuditStatus",
    "AuditView",
    "ConcurrentModificationError",
    "FlagView",
    "InvalidLineItemsError",
    "InvalidTransitionError",
    "PipelineOutput",
    "ProfileNotFoundError",
    "QuotaDecision",
    "QuotaExceededError",
    "QuotaService",
    "SaveOutcome",
    "SqlEntitlementService",
    "SqlProfileStore",
    "Tier",
    "TransientStoreError",
    "audit_view",
    "mask",
    "quota_period",
    "run_with_retry",
    "variance_bucket",
]

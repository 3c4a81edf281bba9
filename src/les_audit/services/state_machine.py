"""Audit state machine with transition validation."""

from __future__ import annotations

from enum import Enum


class AuditStatus(str, Enum):
    """Audit status values."""

    DRAFT = "draft"
    COMPUTED = "computed"
    READY_TO_SUBMIT = "ready_to_submit"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = str(getattr(from_status, "value", from_status))
        self.to_status = str(getattr(to_status, "value", to_status))
        self.reason = reason
        msg = f"Invalid transition from '{self.from_status}' to '{self.to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class AuditStateMachine:
    """State machine for audit status transitions.

    Allowed transitions:
    - draft → computed (recompute)
    - computed → computed (recompute after no-op)
    - computed → draft (line items edited)
    - computed → ready_to_submit (save)

    ready_to_submit is terminal; further edits require a clone.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        AuditStatus.DRAFT: [AuditStatus.COMPUTED],
        AuditStatus.COMPUTED: [AuditStatus.COMPUTED, AuditStatus.DRAFT, AuditStatus.READY_TO_SUBMIT],
        AuditStatus.READY_TO_SUBMIT: [],  # Terminal state
    }

    # Statuses where line items can be edited
    EDITABLE = {AuditStatus.DRAFT, AuditStatus.COMPUTED}

    # Statuses where flags can be regenerated
    RECOMPUTE_ALLOWED = {AuditStatus.DRAFT, AuditStatus.COMPUTED}

    # Statuses where flags may be marked resolved; ready_to_submit flags are frozen
    FLAGS_MUTABLE = {AuditStatus.COMPUTED}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            reason = None
            if from_status == AuditStatus.READY_TO_SUBMIT:
                reason = "audit is ready to submit; clone it to make changes"
            elif to_status == AuditStatus.READY_TO_SUBMIT:
                reason = "audit must be computed before it can be saved"
            raise InvalidTransitionError(from_status, to_status, reason)

    @classmethod
    def can_edit(cls, status: str) -> bool:
        """Check if line items can be modified in this status."""
        return status in cls.EDITABLE

    @classmethod
    def can_recompute(cls, status: str) -> bool:
        """Check if flags may be regenerated in this status."""
        return status in cls.RECOMPUTE_ALLOWED

    @classmethod
    def can_resolve_flags(cls, status: str) -> bool:
        return status in cls.FLAGS_MUTABLE

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

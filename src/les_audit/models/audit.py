"""Audit aggregate, line item, flag, quota and save receipt models."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from les_audit.models.base import Base, TimestampMixin, utcnow


class Audit(Base, TimestampMixin):
    """One member's audit of one month of pay.

    Edits and recomputation are serialized through the version column:
    every UPDATE of the row checks and bumps it (optimistic concurrency).
    """

    __tablename__ = "audit"

    audit_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    profile_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    net_pay_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expected_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    confidence: Mapped[str | None] = mapped_column(String, nullable=True)
    cloned_from_audit_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("audit.audit_id"), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    computed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    saved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'computed', 'ready_to_submit')",
            name="audit_status_check",
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="audit_month_check"),
        CheckConstraint("net_pay_cents >= 0", name="audit_net_pay_check"),
        Index("ix_audit_user", "user_id", "year", "month"),
    )

    __mapper_args__ = {"version_id_col": version}

    line_items: Mapped[list[AuditLineItem]] = relationship(
        back_populates="audit",
        cascade="all, delete-orphan",
        order_by="AuditLineItem.position",
    )
    flags: Mapped[list[AuditFlag]] = relationship(
        back_populates="audit",
        cascade="all, delete-orphan",
        order_by="AuditFlag.position",
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class AuditLineItem(Base, TimestampMixin):
    """A normalized line item from the member's actual pay statement."""

    __tablename__ = "audit_line_item"

    audit_line_item_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    audit_id: Mapped[UUID] = mapped_column(
        ForeignKey("audit.audit_id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    raw_code: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    code: Mapped[str] = mapped_column(String, nullable=False)
    section: Mapped[str] = mapped_column(String, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("audit_id", "position", name="audit_line_item_position_unique"),
        CheckConstraint(
            "section IN ('ALLOWANCE', 'DEDUCTION', 'TAX', 'ALLOTMENT', 'OTHER')",
            name="audit_line_item_section_check",
        ),
    )

    audit: Mapped[Audit] = relationship(back_populates="line_items")


class AuditFlag(Base, TimestampMixin):
    """A discrepancy finding. Regenerated on every recompute."""

    __tablename__ = "audit_flag"

    audit_flag_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    audit_id: Mapped[UUID] = mapped_column(
        ForeignKey("audit.audit_id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    component: Mapped[str] = mapped_column(String, nullable=False)
    flag_code: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False)
    delta_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    expected_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    green_max_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    yellow_max_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    verifiable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    headline: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    suggestion: Mapped[str] = mapped_column(Text, nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("audit_id", "component", name="audit_flag_component_unique"),
        CheckConstraint(
            "severity IN ('red', 'yellow', 'green')",
            name="audit_flag_severity_check",
        ),
    )

    audit: Mapped[Audit] = relationship(back_populates="flags")


class QuotaCounter(Base):
    """Per-user, per-route, per-period save counter."""

    __tablename__ = "quota_counter"

    quota_counter_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    route: Mapped[str] = mapped_column(String, nullable=False)
    period: Mapped[str] = mapped_column(String, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "route", "period", name="quota_counter_key_unique"),
    )


class SaveReceipt(Base, TimestampMixin):
    """Record of a save performed under a client idempotency key."""

    __tablename__ = "save_receipt"

    save_receipt_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String, nullable=False)
    audit_id: Mapped[UUID] = mapped_column(ForeignKey("audit.audit_id"), nullable=False)
    period: Mapped[str] = mapped_column(String, nullable=False)
    quota_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="save_receipt_key_unique"),
    )

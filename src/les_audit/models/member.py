"""Member profile and subscription models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from les_audit.models.base import Base, TimestampMixin, utcnow


class MemberProfile(Base, TimestampMixin):
    """Pay-relevant profile fields for one service member."""

    __tablename__ = "member_profile"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    paygrade: Mapped[str] = mapped_column(String, nullable=False)
    location_code: Mapped[str | None] = mapped_column(String, nullable=True)
    with_dependents: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    years_of_service: Mapped[int] = mapped_column(Integer, nullable=False)
    tsp_contribution_percent: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 4), nullable=True
    )
    sgli_coverage_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dental_premium_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("years_of_service >= 0", name="member_profile_yos_check"),
    )

    special_pays: Mapped[list[MemberSpecialPay]] = relationship(
        back_populates="profile",
        cascade="all, delete-orphan",
        order_by="MemberSpecialPay.code",
    )


class MemberSpecialPay(Base, TimestampMixin):
    """A special pay the member declares eligibility for."""

    __tablename__ = "member_special_pay"

    member_special_pay_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("member_profile.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String, nullable=False)
    monthly_override_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "code", name="member_special_pay_code_unique"),
    )

    profile: Mapped[MemberProfile] = relationship(back_populates="special_pays")


class Subscription(Base, TimestampMixin):
    """Subscription tier for a user."""

    __tablename__ = "subscription"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    tier: Mapped[str] = mapped_column(String, nullable=False, default="free")
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

"""Reference rate tables."""

from __future__ import annotations

from datetime import date
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from les_audit.models.base import Base, TimestampMixin


class RateTableEntry(Base, TimestampMixin):
    """One published reference rate for one pay component.

    Rows are immutable once published. A new rate for the same key is a new
    row with a later effective_date.
    """

    __tablename__ = "rate_table_entry"

    rate_table_entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    component: Mapped[str] = mapped_column(String, nullable=False)
    rate_key: Mapped[str] = mapped_column(String, nullable=False)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "component",
            "rate_key",
            "effective_date",
            name="rate_table_entry_key_date_unique",
        ),
        CheckConstraint("amount_cents >= 0", name="rate_table_entry_amount_check"),
        Index("ix_rate_table_entry_lookup", "component", "rate_key", "effective_date"),
    )

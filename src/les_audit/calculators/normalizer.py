"""Line item normalization.

Turns raw, member- or extractor-supplied line items into ActualLineItems
with a canonical code and section. Unrecognized codes become OTHER line
items; they are never dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from les_audit.calculators.codes import canonicalize_code, section_for
from les_audit.calculators.types import ActualLineItem, ComponentCode, RawLineItem, Section

# Sections whose amounts are magnitudes; the section carries the sign.
NON_NEGATIVE_SECTIONS = frozenset(
    {Section.ALLOWANCE, Section.DEDUCTION, Section.TAX, Section.ALLOTMENT}
)


class InvalidAmountError(Exception):
    """Raised when a line item amount is missing or has an impossible sign."""

    def __init__(
        self,
        raw_code: str,
        amount_cents: int | None,
        reason: str,
        index: int | None = None,
        code: ComponentCode | None = None,
    ):
        self.raw_code = raw_code
        self.code = code
        self.amount_cents = amount_cents
        self.reason = reason
        self.index = index
        where = f" (item {index})" if index is not None else ""
        super().__init__(f"Invalid amount for line item '{raw_code}'{where}: {reason}")


@dataclass(frozen=True)
class NormalizationResult:
    """Normalized items plus the items that failed validation."""

    items: tuple[ActualLineItem, ...]
    rejected: tuple[InvalidAmountError, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.rejected

    @property
    def rejected_codes(self) -> frozenset[ComponentCode]:
        """Canonical codes that had at least one item rejected."""
        return frozenset(e.code for e in self.rejected if e.code is not None)


class LineItemNormalizer:
    """Canonicalizes raw line items against the code map.

    Resolution: raw code first, then description, then OTHER. A missing
    amount fails the item; a negative amount fails the item unless it lands
    in section OTHER (recoupments and adjustments).
    """

    def normalize_item(self, raw: RawLineItem, index: int | None = None) -> ActualLineItem:
        """Normalize one item, raising InvalidAmountError if it is invalid."""
        code = canonicalize_code(raw.code)
        if code is None:
            code = canonicalize_code(raw.description)
        if code is None:
            code = ComponentCode.OTHER
        section = section_for(code)

        if raw.amount_cents is None:
            raise InvalidAmountError(raw.code, None, "amount is required", index, code=code)
        if isinstance(raw.amount_cents, bool) or not isinstance(raw.amount_cents, int):
            raise InvalidAmountError(raw.code, None, "amount must be integer cents", index, code=code)
        if raw.amount_cents < 0 and section in NON_NEGATIVE_SECTIONS:
            raise InvalidAmountError(
                raw.code,
                raw.amount_cents,
                f"{section.value.lower()} amounts cannot be negative",
                index,
                code=code,
            )

        return ActualLineItem(
            raw_code=raw.code,
            code=code,
            section=section,
            amount_cents=raw.amount_cents,
            description=raw.description,
        )

    def normalize(self, raw_items: Iterable[RawLineItem]) -> NormalizationResult:
        """Normalize a batch. Invalid items are collected, not raised."""
        items: list[ActualLineItem] = []
        rejected: list[InvalidAmountError] = []
        for index, raw in enumerate(raw_items):
            try:
                items.append(self.normalize_item(raw, index))
            except InvalidAmountError as exc:
                rejected.append(exc)
        return NormalizationResult(items=tuple(items), rejected=tuple(rejected))

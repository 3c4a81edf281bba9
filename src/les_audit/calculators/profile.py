"""Profile and audit period validation."""

from __future__ import annotations

import calendar
import re
from dataclasses import replace
from datetime import date
from decimal import Decimal

from les_audit.calculators.types import (
    SPECIAL_PAY_CODES,
    DataQualityWarning,
    ProfileSnapshot,
)

_PAYGRADE = re.compile(r"^([EOW])\s*-?\s*0*(\d{1,2})$")
_PAYGRADE_MAX = {"E": 9, "W": 5, "O": 10}
MAX_YEARS_OF_SERVICE = 50


class InvalidInputError(Exception):
    """Raised when a request field is missing or malformed."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


def normalize_paygrade(raw: str) -> str:
    """Normalize a paygrade to E05 / W02 / O10 form.

    Accepts "E-5", "e5", "E05", "O-10".
    """
    match = _PAYGRADE.match((raw or "").strip().upper())
    if match is None:
        raise InvalidInputError("paygrade", f"unrecognized paygrade '{raw}'")
    prefix, number = match.group(1), int(match.group(2))
    if not 1 <= number <= _PAYGRADE_MAX[prefix]:
        raise InvalidInputError("paygrade", f"{prefix}-{number} is not a valid paygrade")
    return f"{prefix}{number:02d}"


def validate_period(month: int, year: int) -> None:
    if not 1 <= month <= 12:
        raise InvalidInputError("month", "must be between 1 and 12")
    if not 2000 <= year <= 2100:
        raise InvalidInputError("year", "must be between 2000 and 2100")


def audit_as_of_date(month: int, year: int) -> date:
    """Rates are resolved as of the last day of the audit month."""
    validate_period(month, year)
    return date(year, month, calendar.monthrange(year, month)[1])


def validate_profile(profile: ProfileSnapshot) -> ProfileSnapshot:
    """Validate a profile and return it with a normalized paygrade."""
    paygrade = normalize_paygrade(profile.paygrade)

    if not 0 <= profile.years_of_service <= MAX_YEARS_OF_SERVICE:
        raise InvalidInputError(
            "years_of_service", f"must be between 0 and {MAX_YEARS_OF_SERVICE}"
        )

    location = profile.location_code.strip().upper() if profile.location_code else None

    seen = set()
    for special in profile.special_pays:
        if special.code not in SPECIAL_PAY_CODES:
            raise InvalidInputError("special_pays", f"{special.code.value} is not a special pay")
        if special.code in seen:
            raise InvalidInputError("special_pays", f"{special.code.value} listed twice")
        seen.add(special.code)
        if special.monthly_override_cents is not None and special.monthly_override_cents < 0:
            raise InvalidInputError("special_pays", "override amounts cannot be negative")

    tsp = profile.tsp_contribution_percent
    if tsp is not None and not Decimal("0") <= tsp <= Decimal("1"):
        raise InvalidInputError("tsp_contribution_percent", "must be a fraction between 0 and 1")

    if profile.sgli_coverage_cents is not None and profile.sgli_coverage_cents < 0:
        raise InvalidInputError("sgli_coverage_cents", "cannot be negative")

    if profile.dental_premium_cents is not None and profile.dental_premium_cents < 0:
        raise InvalidInputError("dental_premium_cents", "cannot be negative")

    return replace(profile, paygrade=paygrade, location_code=location or None)


def rank_yos_warning(profile: ProfileSnapshot) -> DataQualityWarning | None:
    """Flag implausible paygrade / years-of-service combinations."""
    grade = profile.paygrade
    yos = profile.years_of_service
    reason = None

    if grade in ("E01", "E02", "E03", "E04") and yos > 8:
        reason = f"{grade} with {yos} years of service is unusual; junior enlisted typically promote within 4-6 years"
    elif grade == "E09" and yos < 15:
        reason = "E09 typically requires at least 15 years of service"
    elif grade == "E08" and yos < 12:
        reason = "E08 typically requires at least 12 years of service"
    elif grade in ("O07", "O08", "O09", "O10") and yos < 18:
        reason = f"{grade} typically requires at least 18 years of service"
    elif grade in ("O01", "O02") and yos > 6:
        reason = f"{grade} with {yos} years of service is unusual; most promote to O03 within 4 years"

    if reason is None:
        return None
    return DataQualityWarning(
        code="RANK_YOS_IMPLAUSIBLE",
        message=f"{reason}. Verify rank and time in service.",
    )

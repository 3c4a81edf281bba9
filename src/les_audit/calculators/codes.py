"""Canonical line code map.

Maps the spellings and abbreviations found on pay statements to one
canonical code and one section. The map is total: anything it does not
recognize canonicalizes to OTHER.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from les_audit.calculators.types import ComponentCode, Section


@dataclass(frozen=True)
class CodeMeta:
    """Section, description and known aliases for one canonical code."""

    section: Section
    description: str
    aliases: tuple[str, ...] = ()


CODE_MAP: dict[ComponentCode, CodeMeta] = {
    # Allowances
    ComponentCode.BASE_PAY: CodeMeta(
        Section.ALLOWANCE,
        "Base Pay",
        ("BASE PAY", "BASIC PAY", "BASEPAY", "BASE COMPENSATION", "MONTHLY BASE PAY"),
    ),
    ComponentCode.BAH: CodeMeta(
        Section.ALLOWANCE,
        "Basic Allowance for Housing",
        (
            "BASIC ALLOW HOUS",
            "BASIC ALLOWANCE FOR HOUSING",
            "BASIC ALLOW FOR HOUSING",
            "BAH W/DEP",
            "BAH W/O DEP",
            "BAH WITH DEPENDENTS",
            "BAH WITHOUT DEPENDENTS",
        ),
    ),
    ComponentCode.BAS: CodeMeta(
        Section.ALLOWANCE,
        "Basic Allowance for Subsistence",
        (
            "BASIC ALLOW SUBSISTENCE",
            "BASIC ALLOWANCE FOR SUBSISTENCE",
            "BASIC ALLOW FOR SUBSISTENCE",
        ),
    ),
    ComponentCode.COLA: CodeMeta(
        Section.ALLOWANCE,
        "Cost of Living Allowance",
        ("COST OF LIVING", "COST OF LIVING ALLOWANCE", "COST LIVING ALLOW", "COL ALLOWANCE"),
    ),
    ComponentCode.SDAP: CodeMeta(
        Section.ALLOWANCE,
        "Special Duty Assignment Pay",
        ("SPECIAL DUTY ASSIGNMENT PAY", "SPECIAL DUTY ASSGN PAY", "SPEC DUTY PAY"),
    ),
    ComponentCode.HFP_IDP: CodeMeta(
        Section.ALLOWANCE,
        "Hostile Fire Pay / Imminent Danger Pay",
        (
            "HOSTILE FIRE PAY",
            "HOSTILE FIRE/IMMINENT DANGER PAY",
            "IMMINENT DANGER PAY",
            "HFP/IDP",
            "IDP/HFP",
            "HFP",
            "IDP",
        ),
    ),
    ComponentCode.FSA: CodeMeta(
        Section.ALLOWANCE,
        "Family Separation Allowance",
        ("FAMILY SEPARATION ALLOWANCE", "FAMILY SEP ALLOW", "FAM SEP ALLOWANCE"),
    ),
    ComponentCode.FLPP: CodeMeta(
        Section.ALLOWANCE,
        "Foreign Language Proficiency Pay",
        ("FOREIGN LANGUAGE PROFICIENCY PAY", "FOREIGN LANG PROF PAY", "FOREIGN LANGUAGE PAY"),
    ),
    # Deductions
    ComponentCode.SGLI: CodeMeta(
        Section.DEDUCTION,
        "Servicemembers Group Life Insurance",
        ("SERVICEMEMBERS GROUP LIFE INSURANCE", "SGLI PREMIUM", "SGLI INS"),
    ),
    ComponentCode.TSP: CodeMeta(
        Section.DEDUCTION,
        "Thrift Savings Plan Contribution",
        ("THRIFT SAVINGS PLAN", "TSP CONTRIBUTION", "TSP CONTR"),
    ),
    ComponentCode.DENTAL: CodeMeta(
        Section.DEDUCTION,
        "Dental Insurance Premium",
        ("TRICARE DENTAL", "DENTAL INSURANCE", "DENTAL PREM"),
    ),
    ComponentCode.SBP: CodeMeta(
        Section.DEDUCTION,
        "Survivor Benefit Plan",
        ("SURVIVOR BENEFIT PLAN", "SBP PREMIUM", "SBP COST"),
    ),
    # Taxes
    ComponentCode.FITW: CodeMeta(
        Section.TAX,
        "Federal Income Tax Withheld",
        ("FEDERAL INCOME TAX WITHHELD", "FED TAX WITHHELD", "FEDERAL TAX", "FED INC TAX"),
    ),
    ComponentCode.FICA: CodeMeta(
        Section.TAX,
        "Social Security (FICA)",
        ("FICA TAX", "SOCIAL SECURITY", "SOC SEC TAX", "OASDI"),
    ),
    ComponentCode.MEDICARE: CodeMeta(
        Section.TAX,
        "Medicare Tax",
        ("MEDICARE TAX", "MED TAX"),
    ),
    ComponentCode.SITW: CodeMeta(
        Section.TAX,
        "State Income Tax Withheld",
        ("STATE INCOME TAX WITHHELD", "STATE TAX", "ST INC TAX"),
    ),
    # Allotments
    ComponentCode.ALLOT: CodeMeta(
        Section.ALLOTMENT,
        "Voluntary Allotment",
        ("ALLOTMENT", "DISCRETIONARY ALLOTMENT", "VOLUNTARY ALLOTMENT"),
    ),
    # Supplied as its own figure, never as a line item.
    ComponentCode.NET_PAY: CodeMeta(Section.OTHER, "Net Pay"),
    ComponentCode.OTHER: CodeMeta(Section.OTHER, "Other"),
}

_WHITESPACE = re.compile(r"\s+")
_NOT_LINE_CODES = frozenset({ComponentCode.OTHER, ComponentCode.NET_PAY})


def _clean(raw: str) -> str:
    return _WHITESPACE.sub(" ", raw.strip().upper())


def _build_alias_index() -> tuple[dict[str, ComponentCode], list[tuple[re.Pattern[str], ComponentCode]]]:
    exact: dict[str, ComponentCode] = {}
    partial: list[tuple[str, ComponentCode]] = []
    for code, meta in CODE_MAP.items():
        if code in _NOT_LINE_CODES:
            continue
        exact[code.value] = code
        exact[code.value.replace("_", " ")] = code
        for alias in meta.aliases:
            exact.setdefault(alias, code)
            partial.append((alias, code))
    # Longest alias first so "BAH W/O DEP" wins over shorter overlaps.
    partial.sort(key=lambda item: len(item[0]), reverse=True)
    patterns = [
        (re.compile(r"(?<![A-Z0-9])" + re.escape(alias) + r"(?![A-Z0-9])"), code)
        for alias, code in partial
    ]
    return exact, patterns


_EXACT, _PARTIAL = _build_alias_index()


def canonicalize_code(raw: str | None) -> ComponentCode | None:
    """Map a raw code or description to a canonical code.

    Returns None when nothing matches. Matching order: exact code, exact
    alias, then whole-word alias containment.
    """
    if not raw:
        return None
    cleaned = _clean(raw)
    if not cleaned:
        return None

    code = _EXACT.get(cleaned)
    if code is not None:
        return code

    for pattern, candidate in _PARTIAL:
        if pattern.search(cleaned):
            return candidate
    return None


def section_for(code: ComponentCode) -> Section:
    """Get the section for a canonical code."""
    return CODE_MAP[code].section


def description_for(code: ComponentCode) -> str:
    """Get the human-readable description for a canonical code."""
    return CODE_MAP[code].description


def codes_for_section(section: Section) -> list[ComponentCode]:
    """Get all canonical codes in a section."""
    return [code for code, meta in CODE_MAP.items() if meta.section == section]

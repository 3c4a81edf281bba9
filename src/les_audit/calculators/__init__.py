"""Pure reconciliation pipeline: rates, expected pay, normalization, diffing."""

from les_audit.calculators.codes import CODE_MAP, canonicalize_code, section_for
from les_audit.calculators.expected import ExpectedSnapshotBuilder, yos_bracket
from les_audit.calculators.normalizer import (
    InvalidAmountError,
    LineItemNormalizer,
    NormalizationResult,
)
from les_audit.calculators.profile import InvalidInputError, normalize_paygrade, validate_profile
from les_audit.calculators.rate_resolver import (
    InMemoryRateStore,
    RateCache,
    RateIntegrityError,
    RateNotFoundError,
    RateResolver,
    RateStore,
    SqlRateStore,
)
from les_audit.calculators.reconciliation import ReconciliationEngine, classify_severity
from les_audit.calculators.types import (
    ActualLineItem,
    ComponentCode,
    Confidence,
    DataQualityWarning,
    ExpectedPaySnapshot,
    Flag,
    FlagKind,
    ProfileSnapshot,
    RateKey,
    RawLineItem,
    ReconciliationResult,
    Section,
    Severity,
    SpecialPayEligibility,
)

__all__ = [
    "CODE_MAP",
    "ActualLineItem",
    "ComponentCode",
    "Confidence",
    "DataQualityWarning",
    "ExpectedPaySnapshot",
    "ExpectedSnapshotBuilder",
    "Flag",
    "FlagKind",
    "InMemoryRateStore",
    "InvalidAmountError",
    "InvalidInputError",
    "LineItemNormalizer",
    "NormalizationResult",
    "ProfileSnapshot",
    "RateCache",
    "RateIntegrityError",
    "RateKey",
    "RateNotFoundError",
    "RateResolver",
    "RateStore",
    "RawLineItem",
    "ReconciliationEngine",
    "ReconciliationResult",
    "Section",
    "Severity",
    "SpecialPayEligibility",
    "SqlRateStore",
    "canonicalize_code",
    "classify_severity",
    "normalize_paygrade",
    "section_for",
    "validate_profile",
    "yos_bracket",
]

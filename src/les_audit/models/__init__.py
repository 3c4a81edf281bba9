"""ORM models."""

from les_audit.models.audit import Audit, AuditFlag, AuditLineItem, QuotaCounter, SaveReceipt
from les_audit.models.base import Base, TimestampMixin
from les_audit.models.member import MemberProfile, MemberSpecialPay, Subscription
from les_audit.models.rates import RateTableEntry

__all__ = [
    "Audit",
    "AuditFlag",
    "AuditLineItem",
    "Base",
    "MemberProfile",
    "MemberSpecialPay",
    "QuotaCounter",
    "RateTableEntry",
    "SaveReceipt",
    "Subscription",
    "TimestampMixin",
]

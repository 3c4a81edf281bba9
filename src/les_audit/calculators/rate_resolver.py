"""Reference rate resolution with effective dating and explicit fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from les_audit.calculators.types import RateKey, RateRecord
from les_audit.models import RateTableEntry

logger = logging.getLogger(__name__)


class RateNotFoundError(Exception):
    """Raised when no rate exists for a key, even after fallback."""

    def __init__(
        self,
        component: str,
        key: RateKey,
        as_of_date: date,
        fallback: RateKey | None = None,
    ):
        self.component = component
        self.key = key
        self.as_of_date = as_of_date
        self.fallback = fallback
        msg = f"No {component} rate for key '{key}' effective on or before {as_of_date}"
        if fallback is not None:
            msg += f" (fallback key '{fallback}' also missing)"
        super().__init__(msg)


class RateIntegrityError(Exception):
    """Raised when two rates share a key and effective date."""

    def __init__(self, component: str, rate_key: str, effective_date: date):
        self.component = component
        self.rate_key = rate_key
        self.effective_date = effective_date
        super().__init__(
            f"Rate table integrity fault: multiple {component} rates for key "
            f"'{rate_key}' effective {effective_date}"
        )


class RateStore(Protocol):
    """Read access to the versioned rate tables."""

    async def lookup_rate(
        self, component: str, rate_key: str, as_of_date: date
    ) -> RateRecord | None:
        """Return the latest rate with effective_date <= as_of_date, or None."""
        ...


def _pick_latest(
    component: str, rate_key: str, candidates: list[RateRecord]
) -> RateRecord | None:
    """Pick the newest candidate (candidates sorted newest first)."""
    if not candidates:
        return None
    if len(candidates) > 1 and candidates[0].effective_date == candidates[1].effective_date:
        raise RateIntegrityError(component, rate_key, candidates[0].effective_date)
    return candidates[0]


class SqlRateStore:
    """Rate store backed by the rate_table_entry table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def lookup_rate(
        self, component: str, rate_key: str, as_of_date: date
    ) -> RateRecord | None:
        result = await self.session.execute(
            select(RateTableEntry)
            .where(
                RateTableEntry.component == component,
                RateTableEntry.rate_key == rate_key,
                RateTableEntry.effective_date <= as_of_date,
            )
            .order_by(RateTableEntry.effective_date.desc())
            .limit(2)
        )
        rows = [
            RateRecord(
                component=row.component,
                rate_key=row.rate_key,
                effective_date=row.effective_date,
                amount_cents=row.amount_cents,
            )
            for row in result.scalars().all()
        ]
        return _pick_latest(component, rate_key, rows)


class InMemoryRateStore:
    """Rate store over a fixed list of records (fixtures, offline tools)."""

    def __init__(self, records: Iterable[RateRecord] = ()):
        self.records: list[RateRecord] = list(records)
        self.lookups = 0

    def add(self, component: str, key: RateKey | str, effective_date: date, amount_cents: int) -> None:
        rate_key = key.encode() if isinstance(key, RateKey) else key
        self.records.append(RateRecord(component, rate_key, effective_date, amount_cents))

    async def lookup_rate(
        self, component: str, rate_key: str, as_of_date: date
    ) -> RateRecord | None:
        self.lookups += 1
        candidates = sorted(
            (
                r
                for r in self.records
                if r.component == component
                and r.rate_key == rate_key
                and r.effective_date <= as_of_date
            ),
            key=lambda r: r.effective_date,
            reverse=True,
        )
        return _pick_latest(component, rate_key, candidates)


@dataclass
class RateCache:
    """Lookup cache for one snapshot build. Misses are cached too."""

    _entries: dict[tuple[str, str, date], RateRecord | None] = field(default_factory=dict)
    hits: int = 0

    def get(self, component: str, rate_key: str, as_of_date: date) -> tuple[bool, RateRecord | None]:
        key = (component, rate_key, as_of_date)
        if key in self._entries:
            self.hits += 1
            return True, self._entries[key]
        return False, None

    def put(self, component: str, rate_key: str, as_of_date: date, record: RateRecord | None) -> None:
        self._entries[(component, rate_key, as_of_date)] = record

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class ResolvedRate:
    """A resolved rate and how it was found."""

    record: RateRecord
    key: RateKey
    used_fallback: bool = False

    @property
    def amount_cents(self) -> int:
        return self.record.amount_cents


class RateResolver:
    """Resolves the single effective rate for a component.

    Selection:
    1. Exact key match, latest effective_date <= as_of_date
    2. If none and the caller supplied a fallback key, the same lookup with
       the fallback key (logged as a warning)
    3. Otherwise RateNotFoundError
    """

    def __init__(self, store: RateStore):
        self.store = store

    async def resolve(
        self,
        component: str,
        key: RateKey,
        as_of_date: date,
        fallback: RateKey | None = None,
        cache: RateCache | None = None,
    ) -> ResolvedRate:
        """Resolve a rate.

        Args:
            component: Component code (e.g. "BAH")
            key: Exact lookup key
            as_of_date: Effective date for the lookup
            fallback: Optional documented fallback key
            cache: Optional per-build cache

        Raises:
            RateNotFoundError: If neither key resolves
            RateIntegrityError: If the table holds duplicate rates
        """
        record = await self._lookup(component, key, as_of_date, cache)
        if record is not None:
            return ResolvedRate(record=record, key=key)

        if fallback is not None and fallback != key:
            record = await self._lookup(component, fallback, as_of_date, cache)
            if record is not None:
                logger.warning(
                    "Rate fallback used for %s: key '%s' missing, resolved with '%s' as of %s",
                    component,
                    key,
                    fallback,
                    as_of_date,
                )
                return ResolvedRate(record=record, key=fallback, used_fallback=True)

        raise RateNotFoundError(component, key, as_of_date, fallback)

    async def _lookup(
        self,
        component: str,
        key: RateKey,
        as_of_date: date,
        cache: RateCache | None,
    ) -> RateRecord | None:
        rate_key = key.encode()
        if cache is not None:
            found, record = cache.get(component, rate_key, as_of_date)
            if found:
                return record

        record = await self.store.lookup_rate(component, rate_key, as_of_date)
        if cache is not None:
            cache.put(component, rate_key, as_of_date, record)
        return record

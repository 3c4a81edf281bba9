"""Tests for reference rate resolution."""

from datetime import date

import pytest

from les_audit.calculators.rate_resolver import (
    RateCache,
    RateIntegrityError,
    RateNotFoundError,
    RateResolver,
    SqlRateStore,
)
from les_audit.calculators.types import RateKey

from .conftest import E05_BAH_NY_WITH, seed_rates

BAH_KEY = RateKey(location_code="NY349", paygrade="E05", with_dependents=True)


class TestRateKey:
    """Test lookup key encoding."""

    def test_encode_is_deterministic(self):
        """Field order in the encoded key is fixed."""
        assert BAH_KEY.encode() == "location=NY349|paygrade=E05|dependents=1"

    def test_empty_key(self):
        """The flat schedule key."""
        assert RateKey().encode() == "*"

    def test_location_uppercased(self):
        assert RateKey(location_code="ny349").encode() == "location=NY349"


class TestRateResolver:
    """Test effective-dated resolution with explicit fallback."""

    async def test_latest_effective_date_wins(self, rate_store):
        """Picks the newest entry on or before the as-of date."""
        resolver = RateResolver(rate_store)

        current = await resolver.resolve("BAH", BAH_KEY, date(2025, 6, 30))
        prior = await resolver.resolve("BAH", BAH_KEY, date(2024, 12, 31))

        assert current.amount_cents == E05_BAH_NY_WITH
        assert prior.amount_cents == 170_000
        assert not current.used_fallback

    async def test_future_rates_ignored(self, rate_store):
        """A rate effective after the as-of date is never selected."""
        rate_store.add("BAH", BAH_KEY, date(2026, 1, 1), 999_999)
        resolved = await RateResolver(rate_store).resolve("BAH", BAH_KEY, date(2025, 12, 31))
        assert resolved.amount_cents == E05_BAH_NY_WITH

    async def test_not_found(self, rate_store):
        """No entry for the key raises RateNotFoundError."""
        key = RateKey(location_code="ZZ999", paygrade="E05", with_dependents=True)
        with pytest.raises(RateNotFoundError) as exc_info:
            await RateResolver(rate_store).resolve("BAH", key, date(2025, 6, 30))

        assert exc_info.value.component == "BAH"
        assert exc_info.value.key == key

    async def test_before_first_rate_not_found(self, rate_store):
        with pytest.raises(RateNotFoundError):
            await RateResolver(rate_store).resolve("BAH", BAH_KEY, date(2023, 6, 30))

    async def test_explicit_fallback(self, rate_store, caplog):
        """Fallback key is used only when supplied, and is logged."""
        resolver = RateResolver(rate_store)
        key = RateKey(paygrade="E05")

        with pytest.raises(RateNotFoundError):
            await resolver.resolve("SDAP", key, date(2025, 6, 30))

        resolved = await resolver.resolve("SDAP", key, date(2025, 6, 30), fallback=RateKey())
        assert resolved.used_fallback
        assert resolved.key == RateKey()
        assert "fallback" in caplog.text.lower()

    async def test_fallback_missing_too(self, rate_store):
        with pytest.raises(RateNotFoundError) as exc_info:
            await RateResolver(rate_store).resolve(
                "FLPP", RateKey(paygrade="E05"), date(2025, 6, 30), fallback=RateKey()
            )
        assert exc_info.value.fallback == RateKey()

    async def test_duplicate_effective_date_is_integrity_fault(self, rate_store):
        """Two rates for one key and date are a data fault, not a choice."""
        rate_store.add("BAH", BAH_KEY, date(2025, 1, 1), 180_000)
        with pytest.raises(RateIntegrityError):
            await RateResolver(rate_store).resolve("BAH", BAH_KEY, date(2025, 6, 30))

    async def test_cache_avoids_repeat_lookups(self, rate_store):
        """Repeated lookups within one build hit the cache, misses included."""
        resolver = RateResolver(rate_store)
        cache = RateCache()
        as_of = date(2025, 6, 30)

        await resolver.resolve("BAH", BAH_KEY, as_of, cache=cache)
        await resolver.resolve("BAH", BAH_KEY, as_of, cache=cache)
        for _ in range(2):
            with pytest.raises(RateNotFoundError):
                await resolver.resolve("COLA", BAH_KEY, as_of, cache=cache)

        assert rate_store.lookups == 2
        assert cache.hits == 2
        assert len(cache) == 2


class TestSqlRateStore:
    """Test the SQL-backed store."""

    async def test_lookup_latest(self, session):
        """Reads the newest row on or before the date."""
        await seed_rates(session)
        store = SqlRateStore(session)

        record = await store.lookup_rate("BAH", BAH_KEY.encode(), date(2025, 3, 31))

        assert record is not None
        assert record.amount_cents == E05_BAH_NY_WITH
        assert record.effective_date == date(2025, 1, 1)

    async def test_lookup_missing(self, session):
        await seed_rates(session)
        record = await SqlRateStore(session).lookup_rate("COLA", BAH_KEY.encode(), date(2025, 3, 31))
        assert record is None

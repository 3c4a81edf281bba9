"""Pytest fixtures for LES audit tests."""

from __future__ import annotations

from datetime import date
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from les_audit.api.app import create_app
from les_audit.api.dependencies import get_db_session
from les_audit.calculators.rate_resolver import InMemoryRateStore
from les_audit.calculators.types import (
    ComponentCode,
    ProfileSnapshot,
    RateKey,
    RateRecord,
    RawLineItem,
    SpecialPayEligibility,
)
from les_audit.database import make_session_factory
from les_audit.models import Base, MemberProfile, RateTableEntry, Subscription

# Use in-memory SQLite for tests (with async support)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# 2025 reference rates used across the suite, in cents
E05_BASE_PAY = 370_230
E05_BAH_NY_WITH = 175_000
E05_BAH_NY_WITHOUT = 140_000
BAS_ENLISTED = 46_025
BAS_OFFICER = 31_698
SDAP_FLAT = 37_500
SGLI_500K_COVERAGE = 50_000_000
SGLI_500K_PREMIUM = 3_100

CURRENT = date(2025, 1, 1)
PRIOR = date(2024, 1, 1)


def standard_rates() -> list[RateRecord]:
    """Reference rates for an E-5 at NY349 plus the flat schedules."""
    bah_with = RateKey(location_code="NY349", paygrade="E05", with_dependents=True).encode()
    bah_without = RateKey(location_code="NY349", paygrade="E05", with_dependents=False).encode()
    base = RateKey(paygrade="E05", yos_bracket=6).encode()
    return [
        RateRecord("BASE_PAY", base, PRIOR, 350_000),
        RateRecord("BASE_PAY", base, CURRENT, E05_BASE_PAY),
        RateRecord("BAH", bah_with, PRIOR, 170_000),
        RateRecord("BAH", bah_with, CURRENT, E05_BAH_NY_WITH),
        RateRecord("BAH", bah_without, CURRENT, E05_BAH_NY_WITHOUT),
        RateRecord("BAS", RateKey(category="enlisted").encode(), CURRENT, BAS_ENLISTED),
        RateRecord("BAS", RateKey(category="officer").encode(), CURRENT, BAS_OFFICER),
        RateRecord("SDAP", RateKey().encode(), CURRENT, SDAP_FLAT),
        RateRecord(
            "SGLI",
            RateKey(coverage_cents=SGLI_500K_COVERAGE).encode(),
            CURRENT,
            SGLI_500K_PREMIUM,
        ),
    ]


def e5_profile(**overrides) -> ProfileSnapshot:
    """E-5, with dependents, 6 years of service, stationed at NY349."""
    fields = dict(
        paygrade="E-5",
        with_dependents=True,
        years_of_service=6,
        location_code="NY349",
    )
    fields.update(overrides)
    return ProfileSnapshot(**fields)


def matching_items() -> list[RawLineItem]:
    """Line items that match the E-5 reference rates exactly."""
    return [
        RawLineItem("BASE PAY", E05_BASE_PAY),
        RawLineItem("BAH", E05_BAH_NY_WITH),
        RawLineItem("BAS", BAS_ENLISTED),
    ]


async def seed_rates(session: AsyncSession, records: list[RateRecord] | None = None) -> None:
    for record in records if records is not None else standard_rates():
        session.add(
            RateTableEntry(
                component=record.component,
                rate_key=record.rate_key,
                effective_date=record.effective_date,
                amount_cents=record.amount_cents,
            )
        )
    await session.commit()


@pytest.fixture
def profile() -> ProfileSnapshot:
    return e5_profile()


@pytest.fixture
def rate_store() -> InMemoryRateStore:
    return InMemoryRateStore(standard_rates())


@pytest.fixture
def sdap_profile() -> ProfileSnapshot:
    return e5_profile(special_pays=(SpecialPayEligibility(ComponentCode.SDAP),))


@pytest_asyncio.fixture
async def engine():
    """Create a fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def seeded_session(session: AsyncSession) -> AsyncSession:
    """Session over a database holding the standard rates and two members."""
    await seed_rates(session)
    session.add_all(
        [
            MemberProfile(
                user_id="member-free",
                paygrade="E05",
                location_code="NY349",
                with_dependents=True,
                years_of_service=6,
            ),
            MemberProfile(
                user_id="member-premium",
                paygrade="E05",
                location_code="NY349",
                with_dependents=True,
                years_of_service=6,
            ),
            Subscription(user_id="member-premium", tier="premium", status="active"),
        ]
    )
    await session.commit()
    return session


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Session factory over a file database, for tests needing real concurrency."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'les_audit.db'}",
        echo=False,
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = make_session_factory(engine)
    async with factory() as session:
        await seed_rates(session)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def client(session_factory, seeded_session) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, one database session per request."""
    app = create_app()

    async def override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_session

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from les_audit.config import AuditPolicy, Settings, get_policy, get_settings
from les_audit.database import init_db
from les_audit.services.audit_service import AuditLifecycleManager
from les_audit.services.entitlements import SqlEntitlementService
from les_audit.services.tier_policy import Tier


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_user_id(
    x_user_id: Annotated[str | None, Header()] = None
) -> str:
    """Extract the caller's user ID from header."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header is required",
        )
    return x_user_id.strip()


DbSession = Annotated[AsyncSession, Depends(get_db_session)]
UserId = Annotated[str, Depends(get_user_id)]


async def get_caller_tier(db: DbSession, user_id: UserId) -> Tier:
    """Resolve the caller's subscription tier."""
    return await SqlEntitlementService(db).get_tier(user_id)


def get_audit_policy() -> AuditPolicy:
    return get_policy()


def get_app_settings() -> Settings:
    return get_settings()


Policy = Annotated[AuditPolicy, Depends(get_audit_policy)]
CallerTier = Annotated[Tier, Depends(get_caller_tier)]


def get_lifecycle_manager(
    db: DbSession,
    policy: Policy,
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> AuditLifecycleManager:
    return AuditLifecycleManager(
        db,
        policy=policy,
        timeout_seconds=settings.store_timeout_seconds,
        retries=settings.store_retry_attempts,
    )


Lifecycle = Annotated[AuditLifecycleManager, Depends(get_lifecycle_manager)]

"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from les_audit import __version__
from les_audit.api.routes import audits_router, health_router
from les_audit.calculators.normalizer import InvalidAmountError
from les_audit.calculators.profile import InvalidInputError
from les_audit.calculators.rate_resolver import RateIntegrityError
from les_audit.database import dispose_db, init_db
from les_audit.services.audit_service import (
    AuditNotFoundError,
    ConcurrentModificationError,
    InvalidLineItemsError,
)
from les_audit.services.quota_service import QuotaExceededError
from les_audit.services.retry import TransientStoreError
from les_audit.services.state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    init_db()
    yield
    await dispose_db()


def _error(status_code: int, detail: str, code: str, context: dict[str, Any] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "code": code, "context": context},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Translate domain errors into ErrorResponse bodies."""

    @app.exception_handler(InvalidLineItemsError)
    async def invalid_line_items_handler(request: Request, exc: InvalidLineItemsError) -> JSONResponse:
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            str(exc),
            "INVALID_LINE_ITEMS",
            {
                "errors": [
                    {"index": e.index, "raw_code": e.raw_code, "reason": e.reason}
                    for e in exc.errors
                ]
            },
        )

    @app.exception_handler(InvalidInputError)
    async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            str(exc),
            "INVALID_INPUT",
            {"field": exc.field, "reason": exc.reason},
        )

    @app.exception_handler(InvalidAmountError)
    async def invalid_amount_handler(request: Request, exc: InvalidAmountError) -> JSONResponse:
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            str(exc),
            "INVALID_AMOUNT",
            {"raw_code": exc.raw_code, "index": exc.index, "reason": exc.reason},
        )

    @app.exception_handler(QuotaExceededError)
    async def quota_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
        return _error(
            status.HTTP_402_PAYMENT_REQUIRED,
            "Free tier save limit reached for this month. Upgrade to save more audits.",
            "QUOTA_EXCEEDED",
            {"period": exc.period, "limit": exc.limit},
        )

    @app.exception_handler(AuditNotFoundError)
    async def not_found_handler(request: Request, exc: AuditNotFoundError) -> JSONResponse:
        return _error(
            status.HTTP_404_NOT_FOUND, str(exc), "NOT_FOUND", {"audit_id": exc.audit_id}
        )

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return _error(
            status.HTTP_409_CONFLICT,
            str(exc),
            "INVALID_TRANSITION",
            {"from_status": exc.from_status, "to_status": exc.to_status},
        )

    @app.exception_handler(ConcurrentModificationError)
    async def conflict_handler(request: Request, exc: ConcurrentModificationError) -> JSONResponse:
        return _error(
            status.HTTP_409_CONFLICT,
            str(exc),
            "CONCURRENT_MODIFICATION",
            {
                "audit_id": exc.audit_id,
                "expected_version": exc.expected_version,
                "actual_version": exc.actual_version,
            },
        )

    @app.exception_handler(TransientStoreError)
    async def transient_handler(request: Request, exc: TransientStoreError) -> JSONResponse:
        logger.error("Store unavailable for %s after %d attempt(s)", exc.operation, exc.attempts)
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "The audit store is temporarily unavailable. Please retry.",
            "STORE_UNAVAILABLE",
            {"operation": exc.operation, "attempts": exc.attempts},
        )

    @app.exception_handler(RateIntegrityError)
    async def integrity_handler(request: Request, exc: RateIntegrityError) -> JSONResponse:
        logger.error("Rate table integrity fault: %s", exc)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Reference rate data is inconsistent",
            "RATE_INTEGRITY_FAULT",
            {"component": exc.component},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "An unexpected error occurred",
            "INTERNAL_ERROR",
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="LES Audit API",
        description="Paycheck reconciliation for military Leave and Earnings Statements",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(audits_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()

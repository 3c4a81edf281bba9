"""API routes."""

from les_audit.api.routes.audits import router as audits_router
from les_audit.api.routes.health import router as health_router

__all__ = ["audits_router", "health_router"]

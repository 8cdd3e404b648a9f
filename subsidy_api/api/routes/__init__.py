from __future__ import annotations

from subsidy_api.api.routes.applications import router as applications_router
from subsidy_api.api.routes.health import router as health_router

__all__ = ["applications_router", "health_router"]

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint.

    Returns a simple status response to verify the API is operational.
    Used by load balancers and monitoring systems to determine service health.

    Returns:
        dict: A dictionary with a single "status" key set to "ok".
    """

    return {"status": "ok"}


@router.get("/health/ready")
async def readiness_check(request: Request) -> JSONResponse:
    """Readiness check: the shared store must answer.

    Returns 503 with status "degraded" when the store is unreachable, since
    idempotency-protected writes are rejected in that state.
    """

    store_ok = await request.app.state.store.ping()
    if store_ok:
        return JSONResponse({"status": "ok", "store": "ok"})
    return JSONResponse({"status": "degraded", "store": "unavailable"}, status_code=503)

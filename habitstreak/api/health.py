"""
Health and diagnostics endpoints.

Lightweight probes for operational monitoring without exposing secrets.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from habitstreak.core.logging import get_request_id

logger = logging.getLogger("habitstreak")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request):
    """Readiness check: the habit store answers."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return JSONResponse(status_code=503, content={"status": "error", "detail": "engine not started"})
    try:
        if not engine.store.check():
            logger.warning("[readyz] store check failed", extra={"request_id": get_request_id()})
            return JSONResponse(status_code=503, content={"status": "error", "detail": "store unreachable"})
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "store unreachable"})
    return {"status": "ok", "store": type(engine.store).__name__, "cache": engine.cache.stats()}

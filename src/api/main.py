"""
FastAPI application entry point.

Boundary layer over the link audit engine: trigger audits, read health
scores, issues, opportunities and recommendations.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.deps import close_arq_pool
from api.routes.audits import router as audits_router
from api.routes.commission import router as commission_router
from api.routes.health import router as health_router
from api.routes.issues import router as issues_router
from api.routes.links import router as links_router
from workers.link_audit.errors import (
    AuditAlreadyRunningError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: startup/shutdown events."""
    yield
    await close_arq_pool()


app = FastAPI(
    title="LinkGuard",
    description="Revenue health audits for affiliate links",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Routes ────────────────────────────────────────────────────────────
app.include_router(audits_router)
app.include_router(health_router)
app.include_router(issues_router)
app.include_router(commission_router)
app.include_router(links_router)


# ── Error mapping ─────────────────────────────────────────────────────

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "current": exc.current, "target": exc.target},
    )


@app.exception_handler(AuditAlreadyRunningError)
async def already_running_handler(request: Request, exc: AuditAlreadyRunningError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc), "run_id": exc.run_id})


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Registry unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Link registry unavailable"})


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "linkguard"}

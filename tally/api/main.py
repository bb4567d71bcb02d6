"""
tally.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn tally.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from tally.api.deps import get_engine  # noqa: E402
from tally.api.routes.admin import router as admin_router  # noqa: E402
from tally.api.routes.invitations import router as invitations_router  # noqa: E402
from tally.api.routes.points import router as points_router  # noqa: E402
from tally.api.routes.teams import router as teams_router  # noqa: E402
from tally.errors import TallyError  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine."""
    engine = get_engine()
    logger.info("Tally API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Tally API shutting down")


app = FastAPI(
    title="Tally Referral & Rewards API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TallyError)
async def tally_error_handler(request: Request, exc: TallyError) -> JSONResponse:
    """Map domain errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.warning("%s %s → %s: %s", request.method, request.url.path,
                       exc.__class__.__name__, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.__class__.__name__},
    )


# Mount routers
app.include_router(invitations_router, prefix="/api")
app.include_router(points_router, prefix="/api")
app.include_router(teams_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}

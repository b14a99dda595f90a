"""Escrowbook API -- Main Application Entry Point

Creates the FastAPI application, configures logging and CORS middleware,
registers all API route modules under the /api/v1 prefix, and runs the
payout sweep in the background when ``settings.payout_sweep_enabled``.

Run with::

    uvicorn escrowbook.main:app --host 0.0.0.0 --port 8000 --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from escrowbook.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Startup:
      - Configure logging.
      - Start the payout sweeper if enabled.

    Shutdown:
      - Stop the sweeper and dispose of the database engine.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    from escrowbook.api.deps import engine
    from escrowbook.jobs.payoutSweeper import start_payout_sweeper, stop_payout_sweeper

    if settings.payout_sweep_enabled:
        await start_payout_sweeper()
    else:
        logger.info("Payout sweeper disabled; run `python -m escrowbook.jobs.payoutSweeper` from cron")

    yield

    await stop_payout_sweeper()
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application instance
# ---------------------------------------------------------------------------

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# CORS middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health():
    """Lightweight health check for load balancers and readiness checks."""
    return {"status": "ok", "version": settings.app_version}


# ---------------------------------------------------------------------------
# Register API route modules
# ---------------------------------------------------------------------------

from escrowbook.api.routes import (  # noqa: E402
    assignments,
    bookings,
    discounts,
    escrow,
    payouts,
    webhooks,
)

_prefix = settings.api_v1_prefix

app.include_router(bookings.router, prefix=_prefix)
app.include_router(assignments.router, prefix=_prefix)
app.include_router(escrow.router, prefix=_prefix)
app.include_router(payouts.router, prefix=_prefix)
app.include_router(discounts.router, prefix=_prefix)
app.include_router(webhooks.router, prefix=_prefix)

"""Lookout - Main FastAPI Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lookout import __version__
from lookout.api import machines
from lookout.config import settings
from lookout.core.engine import PresenceEngine

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Lookout starting...")
    logger.info(f"   Environment: {settings.environment}")
    logger.info(f"   Machine API: {settings.api_url}")
    logger.info(f"   Push channel: {settings.socket_url}")
    logger.info(f"   Refresh interval: {settings.refresh_interval_seconds}s")

    if not settings.auth_token:
        logger.warning("   Session token: NOT SET (machine API requests will be rejected)")

    engine = PresenceEngine(settings)
    await engine.start()
    app.state.engine = engine

    logger.info("Lookout is ready!")

    yield

    # Shutdown
    logger.info("Lookout shutting down...")
    await app.state.engine.stop()


app = FastAPI(
    title="Lookout",
    description="Live registry of monitored machines",
    version=__version__,
    lifespan=lifespan,
)


# Include routers
app.include_router(machines.router, prefix="/machines", tags=["machines"])


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    engine = getattr(request.app.state, "engine", None)
    return {
        "status": "healthy",
        "service": "lookout",
        "version": __version__,
        "push_channel": "connected" if engine and engine.transport.is_connected else "disconnected",
    }


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": str(exc) if settings.environment == "development" else "An error occurred",
        },
    )

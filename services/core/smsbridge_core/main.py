"""SMS Bridge Core API - Main Application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from smsbridge_core.api.routes import action as action_routes
from smsbridge_core.api.routes import app as app_routes
from smsbridge_core.api.routes import audit as audit_routes
from smsbridge_core.api.routes import decision as decision_routes
from smsbridge_core.api.routes import feeder as feeder_routes
from smsbridge_core.api.routes import metrics as metrics_routes
from smsbridge_core.api.routes import webhooks as webhooks_routes
from smsbridge_core.config import get_settings
from smsbridge_core.observability.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json, "smsbridge-core")
    app.state.settings = settings
    logger.info("app.started", base_url=settings.base_url)
    yield
    # Shutdown
    logger.info("app.stopped")


app = FastAPI(
    title="SMS Bridge Core API",
    description="Dispatches campaign SMS and feeds gateway events back to the marketing platform",
    version="0.1.0",
    lifespan=lifespan,
)

# Configuration pages are served from the platform's domain
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"https://[a-z0-9.-]+\.eloqua\.com",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(action_routes.router)
app.include_router(app_routes.router)
app.include_router(audit_routes.router)
app.include_router(decision_routes.router)
app.include_router(feeder_routes.router)
app.include_router(metrics_routes.router)
app.include_router(webhooks_routes.router)


@app.get("/healthz")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"ok": True, "service": "smsbridge-core"}


@app.get("/")
async def root() -> dict:
    """Root endpoint."""
    return {
        "name": "SMS Bridge Core API",
        "version": "0.1.0",
        "status": "running",
    }

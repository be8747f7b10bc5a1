"""
FastAPI application entry point for the pipeline monitoring dashboard.

Configures:
  • CORS middleware so the dashboard UI can call the API cross-origin
  • Lifespan logging of the record store configuration
  • API routers for the dashboard payload and record detail views
  • Health check endpoint
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.routers import dashboard, records

# ═══════════════════════════════════════════════════════════════════
# Logging
# ═══════════════════════════════════════════════════════════════════

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
# Lifespan — startup / shutdown
# ═══════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log configuration at startup; there is nothing to open or close."""
    logger.info("Starting pipeline dashboard backend (env=%s)...", settings.app_env)

    if settings.store_configured:
        logger.info(
            "✅ Record store: %s (auth_mode=%s, token=%s)",
            settings.store_url,
            settings.auth_mode.value,
            "set" if settings.token_configured else "empty",
        )
    else:
        logger.warning("⚠️  PB_URL not configured — /api/dashboard will return ok=false.")

    logger.info(
        "Field aliases: brand=%s event_brand=%s dup=%s (day boundary=%s)",
        settings.brand_field,
        settings.event_brand_field,
        settings.dup_field,
        settings.day_boundary.value,
    )
    logger.info("🚀 Pipeline dashboard backend ready.")

    yield

    logger.info("Shutdown complete.")


# ═══════════════════════════════════════════════════════════════════
# App Creation
# ═══════════════════════════════════════════════════════════════════

app = FastAPI(
    title="Pipeline Dashboard API",
    description=(
        "Read-only health and throughput summary of the content pipeline "
        "(ingestion → triage → event clustering → generation → publication), "
        "computed on every request from the record store."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


# ═══════════════════════════════════════════════════════════════════
# Middleware
# ═══════════════════════════════════════════════════════════════════

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


# ═══════════════════════════════════════════════════════════════════
# Routers
# ═══════════════════════════════════════════════════════════════════

app.include_router(dashboard.router)
app.include_router(records.router)


# ═══════════════════════════════════════════════════════════════════
# Health Check
# ═══════════════════════════════════════════════════════════════════

@app.get("/health", tags=["health"])
async def health_check():
    """
    Health check endpoint for load balancers.
    Reports configuration only; the record store is not contacted.
    """
    current = get_settings()
    return {
        "status": "healthy",
        "service": "pipeline-dashboard-api",
        "version": "0.1.0",
        "environment": current.app_env,
        "dependencies": {
            "record_store": "configured" if current.store_configured else "not_configured",
            "token": "set" if current.token_configured else "empty",
            "auth_mode": current.auth_mode.value,
        },
    }


@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Pipeline Dashboard API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
        "dashboard": "/api/dashboard",
    }

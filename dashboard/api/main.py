"""
Contribution Hub: API Server
===============================

HTTP layer over the attribution engine: marketing contribution runs,
multi-channel funnel analysis, job status and per-portal settings.

Route groups:
  /api/health                 - Health check
  /api/contribution/*         - Portal-wide contribution run
  /api/mcf/*                  - MCF analysis + latest report
  /api/jobs/*                 - Job progress snapshots
  /api/marketing-sources      - Marketing-source settings
  /webhook/hs-latest-source   - HubSpot property-change webhook
  /ws/jobs                    - WebSocket job feed
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from scripts.lib import config
from scripts.lib.errors import APIError, AttributionError, DataError
from scripts.lib.logger import setup_logger

load_dotenv()

logger = setup_logger("api")

VERSION = "1.0.0"


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app):
    """Application startup and shutdown."""
    from dashboard.api.websocket import ws_manager
    from scripts.attribution.job_runner import JobRunner
    from scripts.attribution.stage_cache import StageCache
    from scripts.attribution.stores import MarketingSourceStore, ReportStore

    logger.info("Starting Contribution Hub...")
    app.state.hubspot_clients = {}
    app.state.job_runner = JobRunner(on_event=ws_manager.broadcast)
    app.state.stage_cache = StageCache()
    app.state.source_store = MarketingSourceStore()
    app.state.report_store = ReportStore()

    status = "configured" if config.HUBSPOT_API_KEY else "not configured (per-portal keys only)"
    logger.info("HubSpot default token: %s", status)
    logger.info("Contribution Hub ready")
    yield
    logger.info("Shutting down Contribution Hub...")
    for client in app.state.hubspot_clients.values():
        await client.aclose()


# ─── App Setup ────────────────────────────────────────────────

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8001"
).split(",")

app = FastAPI(
    title="Contribution Hub",
    version=VERSION,
    description="Marketing contribution scoring and multi-channel funnel analysis for HubSpot",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AttributionError)
async def attribution_error_handler(request: Request, exc: AttributionError):
    """Structured errors become a code + message body, never a stack trace."""
    if isinstance(exc, DataError):
        status_code = 400
    elif isinstance(exc, APIError):
        status_code = 502
    else:
        status_code = 500
    logger.error("%s %s failed [%s]: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# ─── Include Routers ──────────────────────────────────────────

from dashboard.api.routers.contribution import router as contribution_router
from dashboard.api.routers.jobs import router as jobs_router
from dashboard.api.routers.marketing_sources import router as marketing_sources_router
from dashboard.api.routers.mcf import router as mcf_router
from dashboard.api.routers.webhook import router as webhook_router

app.include_router(contribution_router)
app.include_router(mcf_router)
app.include_router(jobs_router)
app.include_router(marketing_sources_router)
app.include_router(webhook_router)


# ─── WebSocket ────────────────────────────────────────────────

from dashboard.api.websocket import websocket_endpoint

app.add_api_websocket_route("/ws/jobs", websocket_endpoint)


# ─── Health ───────────────────────────────────────────────────

@app.get("/api/health", tags=["system"])
async def health():
    """Health check with service status."""
    from dashboard.api.websocket import ws_manager

    return {
        "status": "healthy",
        "service": "Contribution Hub",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "integrations": {
            "hubspot": bool(config.HUBSPOT_API_KEY),
        },
        "contributionPolicy": config.CONTRIBUTION_POLICY,
        "websocket_connections": ws_manager.connection_count,
    }

"""
LevelRisk — FastAPI Application.

Entry point for the API server.
Run: uvicorn levelrisk.main:app --host 0.0.0.0 --port 8001

Background snapshots and retention run in a separate process:
    python -m levelrisk.scheduler_main
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from levelrisk.config import settings
from levelrisk.db.engine import close_db, get_session_factory, init_db
from levelrisk.logging_config import configure_logging
from levelrisk.middleware.error_handler import ErrorHandlerMiddleware, register_exception_handlers
from levelrisk.middleware.request_context import RequestContextMiddleware
from levelrisk.services.bootstrap import Services, build_services

from levelrisk.api.routers.alerts import router as alerts_router
from levelrisk.api.routers.audit_trail import router as audit_trail_router
from levelrisk.api.routers.events import router as events_router
from levelrisk.api.routers.ingest import router as ingest_router
from levelrisk.api.routers.levels import router as levels_router
from levelrisk.api.routers.rules import router as rules_router
from levelrisk.api.routers.site import router as site_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan — startup and shutdown."""
    logger.info("levelrisk_starting", version=settings.app_version)
    await init_db()
    if getattr(app.state, "services", None) is None:
        app.state.services = await build_services(settings, get_session_factory())
    yield
    await close_db()
    logger.info("levelrisk_shutdown")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="LevelRisk",
        description=(
            "# LevelRisk — explainable safety risk per level\n\n"
            "Scores every level of the site from operational events and sensor "
            "measurements, explains each score in plain language, and reproduces "
            "any past score exactly from stored inputs.\n\n"
            "## Flow\n"
            "- **Ingest**: Event/Measurement → Temporal Store → Rule Evaluator → "
            "Aggregator → Explanation → Audit Log + Alerts\n"
            "- **History**: stored inputs → same evaluation path, verified against the audit log\n"
        ),
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_tags=[
            {"name": "health", "description": "Liveness check"},
            {"name": "levels", "description": "Current and historical level risk"},
            {"name": "inputs", "description": "Stored events and measurements"},
            {"name": "ingest", "description": "Event and measurement ingestion"},
            {"name": "alerts", "description": "Alert lifecycle"},
            {"name": "audit", "description": "Audit trail with hash chain integrity"},
            {"name": "rules", "description": "Versioned rule catalog"},
            {"name": "site", "description": "Structure and site roll-up"},
        ],
    )
    app.state.services = services

    register_exception_handlers(app)

    # ── Middleware (order matters: last added = outermost = first to process) ──
    # Request context: request_id, timing, structured logging
    app.add_middleware(RequestContextMiddleware)

    # Error handler: catches everything, returns structured JSON
    app.add_middleware(ErrorHandlerMiddleware)

    # CORS: outermost so OPTIONS preflight is answered first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Routes ────────────────────────────────────────────────────────
    app.include_router(levels_router)       # /api/v1/levels/*
    app.include_router(events_router)       # /api/v1/events, /api/v1/measurements
    app.include_router(ingest_router)       # POST /api/v1/ingest/*
    app.include_router(alerts_router)       # /api/v1/alerts/*
    app.include_router(audit_trail_router)  # /api/v1/audit-trail
    app.include_router(rules_router)        # /api/v1/rules/*
    app.include_router(site_router)         # /api/v1/site/summary

    # ── Health Check (Liveness Probe) ─────────────────────────────────
    @app.get("/health", tags=["health"])
    async def health():
        """Liveness check. Reports the active catalog version once services are up."""
        current = app.state.services.catalog.current() if app.state.services else None
        return {
            "status": "ok",
            "version": settings.app_version,
            "service": "levelrisk",
            "rule_catalog_version": current.version if current else None,
        }

    return app


configure_logging()
app = create_app()

"""DeployGate API - webhook delivery and deployment approval gates."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from deploygate.config import settings
from deploygate.db import init_db
from deploygate.dependencies import Services, build_services, get_services
from deploygate.logging_setup import configure_logging
from deploygate.middleware import MetricsMiddleware
from deploygate.routers import approvals, inbound, webhooks

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.persistence_backend == "sql":
        logger.info("Initializing database", extra={"event": "startup"})
        await init_db()
    app.state.services = await build_services(settings)
    logger.info("DeployGate API ready", extra={"event": "startup"})
    yield
    logger.info("DeployGate API shutting down", extra={"event": "shutdown"})
    await app.state.services.aclose()


app = FastAPI(
    title="DeployGate",
    description="Outbound webhook delivery and deployment approval gates",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(MetricsMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)
app.include_router(approvals.router)
app.include_router(inbound.router)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health(services: Services = Depends(get_services)):
    """Liveness + readiness probe. Checks persistence connectivity."""
    persistence_ok = await services.persistence.ping()

    status = "ok" if persistence_ok else "degraded"
    return {
        "status": status,
        "service": "deploygate",
        "checks": {
            "persistence": "ok" if persistence_ok else "error",
            "pending_retries": services.engine.scheduler.pending(),
        },
    }


# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Expose Prometheus metrics for scraping."""
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)

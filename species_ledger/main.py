"""
Species Ledger - Verified Species Observation Ledger

Main application entry point.

Observations are admitted once and never edited.
Corrections sit beside them; history is never rewritten.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .core import SpeciesLedger
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


def create_app(ledger: Optional[SpeciesLedger] = None) -> FastAPI:
    """
    Build the application.

    Args:
        ledger: Ledger to serve. Defaults to the shared runtime ledger,
            created from environment configuration at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if ledger is None:
            from .runtime import get_ledger
            app.state.ledger = get_ledger()
        else:
            app.state.ledger = ledger
        app.state.event_store = app.state.ledger.event_store

        if app.state.ledger.verify_chain_integrity():
            logger.info("Chain integrity verified OK", event_count=app.state.ledger.event_count)
        else:
            logger.error("Chain integrity check FAILED!")

        logger.info(
            "Application startup complete",
            event_count=app.state.ledger.event_count,
            total_observations=app.state.ledger.get_total_observations(),
            store_type=type(app.state.event_store).__name__,
        )

        yield

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Species Ledger",
        description="""
## Verified Species Observation Ledger

An append-only record of species sightings admitted by an authorized validator.

### Core Principles

- **Immutable**: Observations cannot be edited or deleted after admission
- **Deduplicated**: One observation per (species, timestamp)
- **Traceable**: Every change is a hash-chained, signed event
- **Correctable**: Corrections are annotations, never rewrites

### Results

Ledger routes return `{"ok": true, "value": ...}` on success and
`{"ok": false, "value": <code>}` on rejection:

| code | meaning |
|------|---------|
| 100 | Unauthorized |
| 101 | Invalid observation |
| 102 | Already exists |
| 103 | Invalid query parameters |
| 104 | Not found |
| 105 | Paused |
| 106 | Capacity exceeded |

Commands identify the caller with the `X-Caller-Identity` header.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    from .api.routes_ledger import router as ledger_router
    from .api.routes_public import router as public_router
    app.include_router(public_router)
    app.include_router(ledger_router)

    @app.get("/health", tags=["System"])
    async def health():
        """Liveness. For ledger checks use /health/detailed."""
        return {"status": "healthy", "service": "species-ledger"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check with ledger verification.

        Checks:
        - Service liveness
        - Event store connectivity
        - Chain integrity
        - Ledger/store head consistency

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(
            ledger=request.app.state.ledger,
            event_store=request.app.state.event_store,
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    @app.get("/api", tags=["System"])
    async def api_info(request: Request):
        return {
            "name": "Species Ledger API",
            "version": __version__,
            "storage_backend": type(request.app.state.event_store).__name__,
            "event_count": request.app.state.ledger.event_count,
            "endpoints": {
                "public": {
                    "observations": "/api/public/observations?start=&limit=",
                    "observation": "/api/public/observations/{id}",
                    "correction": "/api/public/observations/{id}/correction",
                    "species_aggregate": "/api/public/species/{species}/aggregate",
                    "region_aggregate": "/api/public/regions/{region_hash}/aggregate",
                    "status": "/api/public/status",
                    "events": "/api/public/events?since=",
                    "integrity": "/api/public/integrity",
                },
                "ledger": {
                    "add_observation": "/api/ledger/observations",
                    "add_correction": "/api/ledger/observations/{id}/corrections",
                    "pause": "/api/ledger/admin/pause",
                    "unpause": "/api/ledger/admin/unpause",
                    "transfer_admin": "/api/ledger/admin/transfer",
                    "set_validator": "/api/ledger/admin/validator",
                },
            },
        }

    return app


app = create_app()

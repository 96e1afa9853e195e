"""
DocVerify - Dual-Ledger Document Verification

Main application entry point.

    pip install -e ".[server]"
    uvicorn docverify.main:app
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api import documents_router, install_error_handlers, public_router
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from .wiring import Services, build_services

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services (unless injected), run the sync listeners, tear down."""
    owned = app.state.services is None
    if owned:
        app.state.services = build_services()
    services: Services = app.state.services

    services.sync_engine.start()

    logger.info(
        "Application startup complete",
        store_type=type(services.store).__name__,
        ledger_a=type(services.ledger_a).__name__,
        ledger_b=type(services.ledger_b).__name__,
        sync_enabled=services.sync_engine.config.enabled,
    )

    yield

    if owned:
        services.close()
    else:
        services.sync_engine.stop()
    logger.info("Application shutdown complete")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Application factory.

    Args:
        services: Pre-wired services (tests). Built from the environment
            at startup when omitted.
    """
    app = FastAPI(
        title="DocVerify",
        description="""
## Dual-Ledger Document Verification

Documents are checked against the issuing organization's permissioned
ledger (LedgerA) and the outcome is anchored on a public ledger (LedgerB).

### Write path
- `POST /api/documents`: verify an uploaded document
- `POST /api/issue`: issue a certificate from a template

### Read path
- `POST /api/verify`: verify by document hash
- `POST /api/verify/certificate`: verify by certificate id
- `POST /api/verify/bulk`: verify up to 100 hashes
- `GET /api/verify/history/{hash}`: ledger history of a document
- `GET /api/verify/download/{certificate_id}`: stored artifact

A positive verification is always a live check of both ledgers.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(RequestContextMiddleware)
    install_error_handlers(app)

    app.include_router(documents_router)
    app.include_router(public_router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "docverify"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Verification store reachability
        - Sync listener and checkpoint state per ledger

        Returns 200 if healthy, 503 otherwise.
        """
        services: Optional[Services] = request.app.state.services
        health_status = check_health(
            store=services.store if services else None,
            sync_engine=services.sync_engine if services else None,
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

    return app


setup_logging()
app = create_app()

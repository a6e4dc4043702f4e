"""
blocklog - Hash-Chained Audit Ledger

Main application entry point.

Every recorded event is chained to the one before it. Anyone can walk
the chain and see whether it still holds.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api import admin_router, public_router
from .core import AppendError, AuditLedger
from .db.store import TransientStoreError
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from .shared_ledger import LedgerConfig, get_shared_ledger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    if getattr(app.state, "ledger", None) is None:
        app.state.ledger = get_shared_ledger()
    ledger: AuditLedger = app.state.ledger

    if getattr(app.state, "verify_on_startup", True) and ledger.entry_count > 0:
        report = ledger.verify_chain()
        if report.valid:
            logger.info("Chain integrity verified OK", total_checked=report.total_checked)
        else:
            logger.error(
                "Chain integrity check FAILED!",
                first_invalid_id=report.first_invalid_id,
                violation=report.violation,
            )

    logger.info(
        "Application startup complete",
        entry_count=ledger.entry_count,
        store_type=type(ledger.store).__name__,
        admin_enabled=bool(app.state.admin_token),
    )

    yield

    ledger.store.close()
    logger.info("Application shutdown complete")


def create_app(
    ledger: Optional[AuditLedger] = None,
    admin_token: Optional[str] = None,
    config: Optional[LedgerConfig] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        ledger: Ledger to serve (default: the shared, env-configured ledger)
        admin_token: Admin API token (default: BLOCKLOG_ADMIN_TOKEN)
        config: Configuration (or loads from environment)
    """
    config = config or LedgerConfig.from_env()

    app = FastAPI(
        title="blocklog",
        description="""
## Hash-Chained Audit Ledger

Append-only record of administrative and user events.

- **Chained**: every entry carries the hash of the entry before it
- **Verifiable**: `GET /api/integrity` walks the whole chain
- **Repairable**: operators can re-seal the chain from a trusted anchor;
  every applied repair is written to a signed journal
        """,
        version=__version__,
        lifespan=lifespan,
    )

    app.state.ledger = ledger
    app.state.admin_token = admin_token if admin_token is not None else config.admin_token
    app.state.verify_on_startup = config.verify_on_startup

    app.add_middleware(RequestContextMiddleware)

    app.include_router(public_router)
    app.include_router(admin_router)

    @app.exception_handler(AppendError)
    async def append_error_handler(request: Request, exc: AppendError):
        return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})

    @app.exception_handler(TransientStoreError)
    async def transient_error_handler(request: Request, exc: TransientStoreError):
        return JSONResponse(status_code=503, content={"success": False, "error": "Ledger store unavailable"})

    @app.get("/health", tags=["System"])
    async def health():
        """Returns 200 if the service is running."""
        return {"status": "healthy", "service": "blocklog"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request, verify: bool = False):
        """
        Detailed health check.

        Returns 200 if healthy, 503 if unhealthy.
        """
        status = check_health(ledger=request.app.state.ledger, verify=verify)
        return JSONResponse(
            status_code=200 if status.healthy else 503,
            content={
                "status": "healthy" if status.healthy else "unhealthy",
                "checks": status.checks,
                "duration_ms": status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


setup_logging()
app = create_app()

"""
Application entrypoint: database pool lifecycle, startup configuration
checks and router wiring.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.middleware import RequestContextMiddleware
from app.routes import billing_webhook, health, internal_sync, seats, sync
from app.services.billing.price_catalog import PriceCatalog
from app.services.billing.pricing import validate_margins

# Setup logging before creating the app
setup_logging(log_level=settings.log_level)
logger = get_logger(__name__)


def run_startup_checks() -> None:
    """
    Fatal configuration checks.

    Raises:
        ConfigurationError: pricing margins or billing price IDs are wrong
    """
    validate_margins()
    if settings.billing_enabled():
        PriceCatalog().validate()
    else:
        logger.warning("Stripe not configured, billing calls disabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    run_startup_checks()

    logger.info("Initializing database pool")
    await db_pool.initialize()

    yield

    logger.info("Application shutting down")
    try:
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))


app = FastAPI(
    title="Integration Reconciler",
    description="Pull-sync for Google mail/calendar and push reconciliation for Stripe billing",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(billing_webhook.router)
app.include_router(sync.router)
app.include_router(internal_sync.router)
app.include_router(seats.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(request.method, request.url.path, response.status_code, round(process_time, 2))
    return response


# Outermost, so the request log line carries request_id
app.add_middleware(RequestContextMiddleware)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

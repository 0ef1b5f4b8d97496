"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from lnking.core.config import settings
from lnking.core.logging import setup_logging
from lnking.core.otel import initialize_otel, instrument_fastapi, instrument_httpx, instrument_sqlalchemy
from lnking.db.redis import get_redis_client
from lnking.db.session import engine, init_db

# Import routers
from lnking.api import billing, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    instrument_sqlalchemy(engine)

    logger.info("Starting notification worker...")
    from lnking.tasks.notification_worker import notification_worker_task
    worker = asyncio.create_task(notification_worker_task())

    yield

    # Shutdown
    logger.info("Shutting down...")
    worker.cancel()


# Create FastAPI app
app = FastAPI(
    title="Lnking Billing",
    description="Flutterwave webhook reconciliation and workspace billing",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)
instrument_httpx()

# Include routers
app.include_router(webhooks.router)
app.include_router(webhooks.flutterwave_router)  # Same handler under /api/flutterwave
app.include_router(billing.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all so unexpected errors return JSON instead of a bare 500"""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"}
    )


@app.get("/health")
def health():
    """Liveness probe"""
    return {"status": "healthy"}


@app.get("/metrics")
def metrics():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

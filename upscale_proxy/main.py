"""
Upscale Proxy - Main Application

FastAPI application with:
- On-demand upscale + resize endpoint (/api/{WIDTH}x{HEIGHT}/{SOURCE})
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
"""

import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request

from upscale_proxy.core.config import settings
from upscale_proxy.core.logging import setup_logging, get_logger
from upscale_proxy.core.exceptions import register_exception_handlers
from upscale_proxy.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from upscale_proxy.api import api_router
from upscale_proxy.api.dependencies import reset_pipeline


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    Path(settings.CACHE_ROOT).mkdir(parents=True, exist_ok=True)
    logger.info("cache_root_ready", cache_root=str(settings.CACHE_ROOT))

    if not settings.allowed_hosts:
        logger.warning("no_allowed_hosts", message="ALLOWED_HOSTS is empty, every request will be rejected")

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    logger.info("application_ready", port=settings.APP_PORT)

    yield

    logger.info("application_shutting_down")
    reset_pipeline()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    On-demand image upscale proxy.

    `GET /api/{WIDTH}x{HEIGHT}/{HOST}/{PATH}` fetches `https://{HOST}/{PATH}`,
    upscales it with RealESRGAN, resizes it to exactly WIDTH x HEIGHT with
    ImageMagick and caches the result on disk.
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    redirect_slashes=False,
    docs_url="/docs",
    redoc_url=None,
    openapi_url="/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Label by route template, image paths are unbounded
    route = request.scope.get("route")
    endpoint = getattr(route, "path", "unmatched")
    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_router)


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "upscale_proxy.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )

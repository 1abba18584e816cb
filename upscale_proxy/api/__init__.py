"""
API Router Module

All endpoints are prefixed with /api/

- /api/metrics - Prometheus metrics
- /api/{WIDTH}x{HEIGHT}/{SOURCE} - Upscaled image
"""

from fastapi import APIRouter

from upscale_proxy.api.images import router as images_router
from upscale_proxy.api.metrics import router as metrics_router

api_router = APIRouter(prefix="/api")

# Metrics first so /api/metrics is never read as an image path
api_router.include_router(metrics_router, tags=["metrics"])
api_router.include_router(images_router, tags=["images"])

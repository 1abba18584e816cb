"""
Metrics Endpoint

GET /api/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from upscale_proxy.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - pipeline_latency_seconds (per stage)
    - resolve_total
    - cache_lookups_total
    - inflight_shared_total
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )

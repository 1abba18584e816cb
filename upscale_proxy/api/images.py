"""
Image Endpoint

GET /api/{WIDTH}x{HEIGHT}/{HOST}/{PATH}.{jpg|jpeg|png}

Fetches the source from https://{HOST}/{PATH}, upscales and resizes it
to exactly WIDTH x HEIGHT and serves the cached result.
"""

from fastapi import APIRouter, Depends, Response

from upscale_proxy.core.logging import get_logger
from upscale_proxy.api.dependencies import get_pipeline, get_source_policy
from upscale_proxy.api.validation import SourcePolicy, parse_dimensions
from upscale_proxy.pipeline.resolver import Pipeline

logger = get_logger(__name__)
router = APIRouter()

# The upscaler always emits jpg
MEDIA_TYPE = "image/jpeg"


@router.get("/{dimensions}/{source:path}")
def get_image(
    dimensions: str,
    source: str,
    pipeline: Pipeline = Depends(get_pipeline),
    policy: SourcePolicy = Depends(get_source_policy)
):
    """
    Serve the source image at the requested resolution.

    Sync endpoint: FastAPI runs each request on its own threadpool worker.
    """
    logger.info("image_request", dimensions=dimensions, source=source)

    width, height = parse_dimensions(dimensions)
    source = policy.validate(source)

    result = pipeline.resolve_detailed(source, width, height)

    return Response(
        content=result.data,
        media_type=MEDIA_TYPE,
        headers={"X-Cache": "HIT" if result.cache_hit else "MISS"}
    )

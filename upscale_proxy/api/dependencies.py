"""
FastAPI Dependencies

Provides dependency injection for:
- Pipeline (singleton, built once per process from settings)
- SourcePolicy (host and extension allow-lists)
"""

import threading
from typing import Optional

from upscale_proxy.core.config import Settings, settings
from upscale_proxy.core.logging import get_logger
from upscale_proxy.api.validation import SourcePolicy
from upscale_proxy.pipeline.resolver import Pipeline, WORK_DIR_NAME
from upscale_proxy.pipeline.transformer import SimulatedTransformer

logger = get_logger(__name__)


# =============================================================================
# Global Singletons - the pipeline owns the in-flight map, only one per process
# =============================================================================

_pipeline: Optional[Pipeline] = None
_pipeline_lock = threading.Lock()


def build_pipeline(app_settings: Settings) -> Pipeline:
    """Build a Pipeline from settings, picking the transform backend."""
    config = app_settings.pipeline_config()

    transformer = None
    if app_settings.SIMULATE_TRANSFORM:
        logger.warning(
            "transform_simulated",
            message="SIMULATE_TRANSFORM is set, using Pillow instead of external tools"
        )
        transformer = SimulatedTransformer(
            upscale_factor=config.upscale_factor,
            work_dir=config.cache_root / WORK_DIR_NAME
        )

    return Pipeline(config, transformer=transformer)


def get_pipeline() -> Pipeline:
    """Get the pipeline instance - ready for FastAPI Depends()."""
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                _pipeline = build_pipeline(settings)
    return _pipeline


def reset_pipeline():
    """Drop the singleton instance (useful for testing)."""
    global _pipeline
    with _pipeline_lock:
        if _pipeline is not None:
            _pipeline.fetcher.close()
        _pipeline = None


def get_source_policy() -> SourcePolicy:
    """Allow-lists from the current settings."""
    return SourcePolicy(
        allowed_hosts=settings.allowed_hosts,
        allowed_extensions=settings.allowed_extensions
    )

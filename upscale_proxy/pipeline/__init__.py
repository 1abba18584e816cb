"""
Image Resolve Pipeline

Cache-aware stages run once per (source, width, height):
1. Fetch - download the source into the raw tier
2. Upscale - RealESRGAN by a fixed factor
3. Resize - ImageMagick to the exact target dimensions
4. Commit - atomic write into the resolved tier
"""

from upscale_proxy.pipeline.keys import derive_key
from upscale_proxy.pipeline.resolver import Pipeline, ResolveResult

__all__ = ["derive_key", "Pipeline", "ResolveResult"]

"""
Upscale Proxy

On-demand image fetch, upscale and resize proxy with a
resolution-scoped filesystem cache.
"""

__version__ = "1.0.0"

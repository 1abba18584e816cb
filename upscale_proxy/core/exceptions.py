"""
Global Exception Handling

Typed failures for every pipeline stage plus the FastAPI handlers that
log them with full context and answer the client with a generic body.
"""

import traceback
from enum import Enum
from typing import Optional, Dict, Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from upscale_proxy.core.logging import get_logger, cache_key_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class ProxyBaseException(Exception):
    """Base exception for Upscale Proxy."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        cache_key: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.cache_key = cache_key or cache_key_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class InvalidInputError(ProxyBaseException):
    """Raised when a dimension, path, host or extension is rejected."""

    def __init__(self, message: str, code: int = 404, **kwargs):
        super().__init__(message, code=code, stage="validation", **kwargs)


class FetchError(ProxyBaseException):
    """Raised when the source image cannot be downloaded."""

    def __init__(self, message: str, url: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, stage="fetch", **kwargs)
        self.details["url"] = url
        self.details["http_status"] = http_status


class TransformErrorKind(str, Enum):
    """Which external tool failed."""
    UPSCALE_FAILED = "upscale_failed"
    RESIZE_FAILED = "resize_failed"


class TransformError(ProxyBaseException):
    """Raised when the upscale or resize subprocess fails."""

    def __init__(
        self,
        message: str,
        kind: TransformErrorKind,
        returncode: Optional[int] = None,
        output: str = "",
        **kwargs
    ):
        stage = "upscale" if kind == TransformErrorKind.UPSCALE_FAILED else "resize"
        super().__init__(message, code=500, stage=stage, **kwargs)
        self.kind = kind
        self.details["kind"] = kind.value
        self.details["returncode"] = returncode
        self.details["output"] = output


class StorageError(ProxyBaseException):
    """Raised when the resolved artifact cannot be committed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, stage="commit", **kwargs)


class CacheReadError(ProxyBaseException):
    """Raised when a cached artifact vanished or is unreadable."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, stage="read", **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def client_status_for(exc: ProxyBaseException) -> int:
    """
    Map a failure to the status the client sees.

    Only rejected hosts keep their own status. Every other failure kind is
    reported as not-found so internal diagnostics never reach the client.
    """
    if isinstance(exc, InvalidInputError) and exc.code == 400:
        return 400
    return 404


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(ProxyBaseException)
    async def proxy_exception_handler(request: Request, exc: ProxyBaseException):
        status_code = client_status_for(exc)

        log = logger.info if isinstance(exc, InvalidInputError) else logger.error
        log(
            "proxy_exception",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            stage=exc.stage,
            cache_key=exc.cache_key,
            details=exc.details,
            path=str(request.url.path),
        )

        message = exc.message if status_code == 400 else "Not found"
        return JSONResponse(status_code=status_code, content={"error": message})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(status_code=404, content={"error": "Not found"})

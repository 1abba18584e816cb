"""
Resolve Pipeline

    START -> CACHE_CHECK -> HIT: read and return
                         -> MISS: FETCH_RAW -> TRANSFORM -> COMMIT -> return

Every failure is terminal for the call and propagates as a typed
exception. Nothing is retried here; callers may re-issue resolve().
Concurrent callers for the same (key, width, height) share a single
computation, and concurrent raw fetches of the same key are collapsed too.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from upscale_proxy.core.config import PipelineConfig
from upscale_proxy.core.exceptions import (
    ProxyBaseException,
    InvalidInputError,
    FetchError,
    TransformError,
    StorageError,
    CacheReadError,
)
from upscale_proxy.core.logging import get_logger, LogContext
from upscale_proxy.core.metrics import (
    track_stage_latency,
    record_cache_lookup,
    record_resolve,
    record_inflight_shared,
)
from upscale_proxy.core.storage import ICacheStore, FilesystemCacheStore
from upscale_proxy.pipeline.fetcher import HttpFetcher
from upscale_proxy.pipeline.keys import derive_key
from upscale_proxy.pipeline.singleflight import SingleFlight
from upscale_proxy.pipeline.transformer import Transformer, SubprocessTransformer

logger = get_logger(__name__)

WORK_DIR_NAME = ".work"


@dataclass(frozen=True)
class ResolveResult:
    """Bytes served by resolve() plus how they were obtained."""

    data: bytes
    cache_key: str
    cache_hit: bool
    shared: bool = False


def failure_status(exc: ProxyBaseException) -> str:
    if isinstance(exc, InvalidInputError):
        return "invalid_input"
    if isinstance(exc, FetchError):
        return "fetch_failed"
    if isinstance(exc, TransformError):
        return "transform_failed"
    if isinstance(exc, StorageError):
        return "storage_failed"
    if isinstance(exc, CacheReadError):
        return "read_failed"
    return "failed"


class Pipeline:
    """
    Composes the cache store, fetcher and transformer into resolve().

    Args:
        config: Explicit pipeline configuration
        store: Cache store (defaults to a filesystem store at config.cache_root)
        fetcher: Source downloader (defaults to HttpFetcher)
        transformer: Upscale + resize backend (defaults to SubprocessTransformer)
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: Optional[ICacheStore] = None,
        fetcher: Optional[HttpFetcher] = None,
        transformer: Optional[Transformer] = None
    ):
        self.config = config
        self.store = store or FilesystemCacheStore(config.cache_root)
        self.fetcher = fetcher or HttpFetcher(
            timeout=config.fetch_timeout_seconds,
            max_bytes=config.max_source_bytes,
            scheme=config.source_scheme
        )
        self.transformer = transformer or SubprocessTransformer(
            upscaler_bin=config.upscaler_bin,
            upscaler_model=config.upscaler_model,
            upscale_factor=config.upscale_factor,
            resize_bin=config.resize_bin,
            resize_force_exact=config.resize_force_exact,
            timeout=config.transform_timeout_seconds,
            work_dir=Path(config.cache_root) / WORK_DIR_NAME
        )
        self._resolved_flight = SingleFlight()
        self._raw_flight = SingleFlight()

    def resolve(self, url: str, width: int, height: int) -> bytes:
        """Return the image at `url` transformed to exactly width x height."""
        return self.resolve_detailed(url, width, height).data

    def resolve_detailed(self, url: str, width: int, height: int) -> ResolveResult:
        start_time = datetime.utcnow()
        cache_key = None

        try:
            self._validate_dimensions(width, height)
            cache_key = derive_key(url)

            with LogContext(cache_key=cache_key, stage="cache_check"):
                result = self._resolve(url, cache_key, width, height)

        except ProxyBaseException as e:
            status = failure_status(e)
            record_resolve(status)
            log = logger.info if isinstance(e, InvalidInputError) else logger.error
            log(
                "resolve_failed",
                status=status,
                cache_key=cache_key,
                width=width,
                height=height,
                stage=e.stage,
                error=e.message,
                details=e.details
            )
            raise

        duration_ms = int((datetime.utcnow() - start_time).total_seconds() * 1000)
        record_resolve("hit" if result.cache_hit else "served")
        logger.info(
            "resolve_completed",
            cache_key=cache_key,
            width=width,
            height=height,
            cache_hit=result.cache_hit,
            shared=result.shared,
            size=len(result.data),
            duration_ms=duration_ms
        )
        return result

    def _validate_dimensions(self, width: int, height: int):
        for name, value in (("width", width), ("height", height)):
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise InvalidInputError(f"{name} must be a positive integer", details={name: value})
            if value > self.config.max_dimension:
                raise InvalidInputError(
                    f"{name} exceeds {self.config.max_dimension}",
                    details={name: value}
                )

    def _read_cached(self, cache_key: str, width: int, height: int) -> Optional[bytes]:
        """Bytes of the resolved artifact, or None when absent or vanished."""
        artifact = self.store.lookup_resolved(cache_key, width, height)
        if artifact is None:
            return None

        try:
            return self.store.read(artifact)
        except CacheReadError as e:
            logger.warning(
                "resolve_cache_read_failed",
                width=width,
                height=height,
                error=e.message
            )
            return None

    def _resolve(self, url: str, cache_key: str, width: int, height: int) -> ResolveResult:
        data = self._read_cached(cache_key, width, height)
        record_cache_lookup("resolved", data is not None)
        if data is not None:
            logger.debug("resolve_cache_hit", width=width, height=height)
            return ResolveResult(data=data, cache_key=cache_key, cache_hit=True)

        logger.debug("resolve_cache_miss", width=width, height=height)
        (data, cache_hit), shared = self._resolved_flight.do(
            (cache_key, width, height),
            lambda: self._populate(url, cache_key, width, height)
        )
        if shared:
            record_inflight_shared("resolved")
        return ResolveResult(data=data, cache_key=cache_key, cache_hit=cache_hit, shared=shared)

    def _populate(self, url: str, cache_key: str, width: int, height: int):
        # A previous burst may have committed since our cache check
        data = self._read_cached(cache_key, width, height)
        if data is not None:
            return data, True

        raw_path = self._ensure_raw(url, cache_key)

        with LogContext(stage="transform"):
            data = self.transformer.transform(raw_path, width, height)

        with LogContext(stage="commit"):
            with track_stage_latency("commit"):
                self.store.write_resolved(cache_key, width, height, data)

        return data, False

    def _ensure_raw(self, url: str, cache_key: str) -> Path:
        artifact = self.store.lookup_raw(cache_key)
        record_cache_lookup("raw", artifact is not None)
        if artifact is not None:
            return artifact.storage_path

        path, shared = self._raw_flight.do(cache_key, lambda: self._fetch_raw(url, cache_key))
        if shared:
            record_inflight_shared("raw")
        return path

    def _fetch_raw(self, url: str, cache_key: str) -> Path:
        artifact = self.store.lookup_raw(cache_key)
        if artifact is not None:
            return artifact.storage_path

        with LogContext(stage="fetch"):
            with track_stage_latency("fetch"):
                return self.fetcher.fetch(url, self.store.raw_path(cache_key))

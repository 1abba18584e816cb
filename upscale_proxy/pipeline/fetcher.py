"""
Source image download.

Streams the source body into the raw cache tier. The payload goes to a
temp file next to the destination and is renamed into place only after
the whole body arrived, so a partial download is never visible.
"""

import os
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import httpx

from upscale_proxy.core.exceptions import FetchError
from upscale_proxy.core.logging import get_logger
from upscale_proxy.core.storage import temp_sibling, remove_quietly

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


def source_to_url(source: str, scheme: str = "https") -> str:
    """Prefix scheme-relative sources (host/path) with the fetch scheme."""
    if "://" in source:
        return source
    return f"{scheme}://{source.lstrip('/')}"


class HttpFetcher:
    """
    Blocking HTTP downloader.

    Args:
        timeout: Seconds allowed for connect and each read, and for the
            whole download
        max_bytes: Optional upper bound on the body size
        scheme: Scheme used for scheme-relative sources
        client: Optional pre-built httpx.Client (used by tests)
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_bytes: Optional[int] = None,
        scheme: str = "https",
        client: Optional[httpx.Client] = None
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.scheme = scheme
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=False)

    def close(self):
        self._client.close()

    def fetch(self, source: str, destination: Path) -> Path:
        """
        Download `source` to `destination`.

        Returns:
            The destination path, fully written.

        Raises:
            FetchError: on transport errors, non-success status, oversized
                bodies or local I/O failures.
        """
        url = source_to_url(source, self.scheme)
        destination = Path(destination)
        tmp_path = temp_sibling(destination)
        start_time = datetime.utcnow()
        deadline = time.monotonic() + self.timeout

        logger.debug("fetch_starting", url=url)

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with self._client.stream("GET", url) as response:
                if not response.is_success:
                    raise FetchError(
                        f"Source responded with status {response.status_code}",
                        url=url,
                        http_status=response.status_code
                    )

                written = 0
                with open(tmp_path, "wb") as f:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        written += len(chunk)
                        if self.max_bytes is not None and written > self.max_bytes:
                            raise FetchError(
                                f"Source exceeds {self.max_bytes} bytes",
                                url=url,
                                http_status=response.status_code
                            )
                        if time.monotonic() > deadline:
                            raise FetchError(
                                f"Timed out fetching source: body not complete after {self.timeout}s",
                                url=url,
                                http_status=response.status_code
                            )
                        f.write(chunk)
            os.replace(tmp_path, destination)

        except FetchError:
            remove_quietly(tmp_path)
            raise
        except httpx.TimeoutException as e:
            remove_quietly(tmp_path)
            raise FetchError(f"Timed out fetching source: {e}", url=url) from e
        except httpx.HTTPError as e:
            remove_quietly(tmp_path)
            raise FetchError(f"HTTP error fetching source: {e}", url=url) from e
        except OSError as e:
            remove_quietly(tmp_path)
            raise FetchError(f"Failed to store source: {e}", url=url) from e

        duration_ms = int((datetime.utcnow() - start_time).total_seconds() * 1000)
        logger.info("fetch_completed", url=url, size=written, duration_ms=duration_ms)

        return destination

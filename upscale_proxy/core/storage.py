"""
Cache Storage Layer

Provides a clean interface for the two cache tiers with a filesystem
implementation:

    {root}/{key}                    raw tier (downloaded source)
    {root}/{width}x{height}/{key}   resolved tier (transformed output)

The layout is part of the operational contract and must not change.
"""

import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from upscale_proxy.core.exceptions import CacheReadError, StorageError
from upscale_proxy.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Artifact:
    """One stored image. Raw-tier artifacts carry no dimensions."""

    key: str
    storage_path: Path
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def is_resolved(self) -> bool:
        return self.width is not None and self.height is not None


def temp_sibling(path: Path) -> Path:
    """Hidden, unique temp path in the same directory as `path`."""
    return path.with_name(f".{path.name}.tmp.{uuid.uuid4().hex}")


def remove_quietly(path: Path) -> None:
    """Best-effort removal of a partial file."""
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("partial_file_cleanup_failed", path=str(path), error=str(e))


class ICacheStore(ABC):
    """Interface for cache storage operations."""

    @abstractmethod
    def raw_path(self, key: str) -> Path:
        """Where the raw-tier copy of `key` lives."""
        pass

    @abstractmethod
    def resolved_path(self, key: str, width: int, height: int) -> Path:
        """Where the resolved-tier copy of `key` at width x height lives."""
        pass

    @abstractmethod
    def lookup_raw(self, key: str) -> Optional[Artifact]:
        """Return the raw artifact for `key`, or None on miss."""
        pass

    @abstractmethod
    def lookup_resolved(self, key: str, width: int, height: int) -> Optional[Artifact]:
        """Return the resolved artifact for the triple, or None on miss."""
        pass

    @abstractmethod
    def write_resolved(self, key: str, width: int, height: int, data: bytes) -> Artifact:
        """
        Atomically materialize a resolved artifact.

        Raises:
            StorageError: when the file cannot be written. No partial file
                is left behind.
        """
        pass

    @abstractmethod
    def read(self, artifact: Artifact) -> bytes:
        """
        Read the full contents of an artifact.

        Raises:
            CacheReadError: when the file vanished or cannot be read.
        """
        pass


class FilesystemCacheStore(ICacheStore):
    """Local filesystem cache rooted at a single directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def raw_path(self, key: str) -> Path:
        return self.root / key

    def resolved_path(self, key: str, width: int, height: int) -> Path:
        return self.root / f"{width}x{height}" / key

    def lookup_raw(self, key: str) -> Optional[Artifact]:
        path = self.raw_path(key)
        if not path.is_file():
            return None
        return Artifact(key=key, storage_path=path)

    def lookup_resolved(self, key: str, width: int, height: int) -> Optional[Artifact]:
        path = self.resolved_path(key, width, height)
        if not path.is_file():
            return None
        return Artifact(key=key, storage_path=path, width=width, height=height)

    def write_resolved(self, key: str, width: int, height: int, data: bytes) -> Artifact:
        path = self.resolved_path(key, width, height)
        tmp_path = temp_sibling(path)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            remove_quietly(tmp_path)
            raise StorageError(
                f"Failed to write resolved artifact: {e}",
                cache_key=key,
                details={"path": str(path), "width": width, "height": height}
            ) from e

        logger.debug("resolved_artifact_written", path=str(path), size=len(data))
        return Artifact(key=key, storage_path=path, width=width, height=height)

    def read(self, artifact: Artifact) -> bytes:
        try:
            with open(artifact.storage_path, "rb") as f:
                return f.read()
        except OSError as e:
            raise CacheReadError(
                f"Failed to read cached artifact: {e}",
                cache_key=artifact.key,
                details={"path": str(artifact.storage_path)}
            ) from e

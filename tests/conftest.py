import os
import tempfile
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Settings are read at import time, keep the app away from ./var
os.environ.setdefault("CACHE_ROOT", tempfile.mkdtemp(prefix="upscale-proxy-test-"))
os.environ.setdefault("ALLOWED_HOSTS", "images.test")
os.environ.setdefault("LOG_FORMAT_JSON", "false")

from upscale_proxy.core.config import PipelineConfig
from upscale_proxy.core.storage import FilesystemCacheStore
from upscale_proxy.pipeline.resolver import Pipeline
from upscale_proxy.api.validation import SourcePolicy

SOURCE = "images.test/photos/cat.jpg"


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    root = tmp_path / "var"
    root.mkdir()
    return root


@pytest.fixture
def config(cache_root: Path) -> PipelineConfig:
    return PipelineConfig(cache_root=cache_root, max_dimension=4096)


@pytest.fixture
def store(cache_root: Path) -> FilesystemCacheStore:
    return FilesystemCacheStore(cache_root)


@pytest.fixture
def fetcher():
    """Fetcher double that writes a fake source into the raw tier."""
    def fake_fetch(url, destination):
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"raw-source-bytes")
        return destination

    double = MagicMock()
    double.fetch.side_effect = fake_fetch
    return double


@pytest.fixture
def transformer():
    """Transformer double whose output encodes the requested dimensions."""
    double = MagicMock()
    double.transform.side_effect = lambda raw_path, width, height: f"jpeg-{width}x{height}".encode()
    return double


@pytest.fixture
def pipeline(config, store, fetcher, transformer) -> Pipeline:
    return Pipeline(config, store=store, fetcher=fetcher, transformer=transformer)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest_asyncio.fixture
async def client(pipeline) -> AsyncGenerator[AsyncClient, None]:
    from upscale_proxy.main import app
    from upscale_proxy.api.dependencies import get_pipeline, get_source_policy

    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_source_policy] = lambda: SourcePolicy(allowed_hosts=["images.test"])

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app, raise_app_exceptions=False), base_url="http://test") as ac:
            yield ac

    app.dependency_overrides.clear()

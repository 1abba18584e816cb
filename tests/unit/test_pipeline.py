import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from upscale_proxy.core.exceptions import (
    CacheReadError,
    FetchError,
    InvalidInputError,
    StorageError,
    TransformError,
    TransformErrorKind,
)
from upscale_proxy.core.storage import FilesystemCacheStore
from upscale_proxy.pipeline.keys import derive_key
from upscale_proxy.pipeline.resolver import Pipeline
from upscale_proxy.pipeline.transformer import SimulatedTransformer

SOURCE = "images.test/photos/cat.jpg"
KEY = derive_key(SOURCE)


def test_cache_hit_skips_fetch_and_transform(pipeline, store, fetcher, transformer):
    store.write_resolved(KEY, 800, 600, b"cached-bytes")

    result = pipeline.resolve_detailed(SOURCE, 800, 600)

    assert result.data == b"cached-bytes"
    assert result.cache_hit
    assert fetcher.fetch.call_count == 0
    assert transformer.transform.call_count == 0


def test_cache_miss_runs_fetch_transform_commit_in_order(config, fetcher, transformer, cache_root):
    events = []

    class RecordingStore(FilesystemCacheStore):
        def write_resolved(self, key, width, height, data):
            events.append(("commit", key, width, height))
            return super().write_resolved(key, width, height, data)

    fetch = fetcher.fetch.side_effect
    fetcher.fetch.side_effect = lambda url, dest: events.append(("fetch", url)) or fetch(url, dest)
    transform = transformer.transform.side_effect
    transformer.transform.side_effect = lambda raw, w, h: events.append(("transform", raw, w, h)) or transform(raw, w, h)

    store = RecordingStore(cache_root)
    pipeline = Pipeline(config, store=store, fetcher=fetcher, transformer=transformer)

    data = pipeline.resolve(SOURCE, 800, 600)

    assert data == b"jpeg-800x600"
    assert events == [
        ("fetch", SOURCE),
        ("transform", cache_root / KEY, 800, 600),
        ("commit", KEY, 800, 600),
    ]
    fetcher.fetch.assert_called_once_with(SOURCE, cache_root / KEY)
    assert (cache_root / "800x600" / KEY).read_bytes() == b"jpeg-800x600"


def test_transform_failure_leaves_no_resolved_artifact(pipeline, store, transformer):
    transformer.transform.side_effect = TransformError(
        "realesrgan exited with code 255",
        kind=TransformErrorKind.UPSCALE_FAILED,
        returncode=255
    )

    with pytest.raises(TransformError):
        pipeline.resolve(SOURCE, 800, 600)

    assert not store.resolved_path(KEY, 800, 600).exists()
    assert store.lookup_resolved(KEY, 800, 600) is None


def test_fetch_failure_is_terminal(pipeline, store, fetcher, transformer):
    fetcher.fetch.side_effect = FetchError("Source responded with status 404", url=SOURCE, http_status=404)

    with pytest.raises(FetchError):
        pipeline.resolve(SOURCE, 800, 600)

    assert transformer.transform.call_count == 0
    assert store.lookup_resolved(KEY, 800, 600) is None


def test_storage_failure_is_terminal(pipeline, store, monkeypatch):
    def broken_write(key, width, height, data):
        raise StorageError("disk full", cache_key=key)

    monkeypatch.setattr(store, "write_resolved", broken_write)

    with pytest.raises(StorageError):
        pipeline.resolve(SOURCE, 800, 600)


def test_failed_resolve_can_be_retried(pipeline, fetcher):
    fake_fetch = fetcher.fetch.side_effect
    attempts = []

    def flaky_fetch(url, destination):
        attempts.append(url)
        if len(attempts) == 1:
            raise FetchError("connection reset", url=url)
        return fake_fetch(url, destination)

    fetcher.fetch.side_effect = flaky_fetch

    with pytest.raises(FetchError):
        pipeline.resolve(SOURCE, 800, 600)

    assert pipeline.resolve(SOURCE, 800, 600) == b"jpeg-800x600"


def test_repeat_resolve_is_served_from_cache(pipeline, fetcher, transformer):
    first = pipeline.resolve_detailed(SOURCE, 800, 600)
    second = pipeline.resolve_detailed(SOURCE, 800, 600)

    assert first.data == second.data
    assert not first.cache_hit
    assert second.cache_hit
    assert fetcher.fetch.call_count == 1
    assert transformer.transform.call_count == 1


def test_raw_artifact_is_reused_across_resolutions(pipeline, fetcher, transformer, cache_root):
    assert pipeline.resolve(SOURCE, 800, 600) == b"jpeg-800x600"
    assert pipeline.resolve(SOURCE, 400, 300) == b"jpeg-400x300"

    assert fetcher.fetch.call_count == 1
    assert transformer.transform.call_count == 2
    assert (cache_root / KEY).exists()
    assert (cache_root / "800x600" / KEY).exists()
    assert (cache_root / "400x300" / KEY).exists()


def test_vanished_cache_file_is_recomputed(pipeline, store, transformer, monkeypatch):
    store.write_resolved(KEY, 800, 600, b"stale")

    def vanished(artifact):
        raise CacheReadError("No such file or directory", cache_key=artifact.key)

    monkeypatch.setattr(store, "read", vanished)

    result = pipeline.resolve_detailed(SOURCE, 800, 600)

    assert result.data == b"jpeg-800x600"
    assert not result.cache_hit
    assert transformer.transform.call_count == 1


@pytest.mark.parametrize("width,height", [(0, 600), (800, 0), (-1, 600), (5000, 600), (800, 5000)])
def test_invalid_dimensions_are_rejected(pipeline, fetcher, width, height):
    with pytest.raises(InvalidInputError):
        pipeline.resolve(SOURCE, width, height)

    assert fetcher.fetch.call_count == 0


def test_source_without_extension_is_rejected(pipeline, fetcher):
    with pytest.raises(InvalidInputError):
        pipeline.resolve("images.test/photos/cat", 800, 600)

    assert fetcher.fetch.call_count == 0


def test_concurrent_identical_requests_share_one_computation(pipeline, fetcher, transformer, store):
    payload = b"\xff\xd8" + b"x" * 512 * 1024

    def slow_transform(raw_path, width, height):
        time.sleep(0.3)
        return payload

    transformer.transform.side_effect = slow_transform

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: pipeline.resolve(SOURCE, 800, 600), range(8)))

    assert all(r == payload for r in results)
    assert fetcher.fetch.call_count == 1
    assert transformer.transform.call_count == 1
    assert store.read(store.lookup_resolved(KEY, 800, 600)) == payload


def test_concurrent_identical_requests_fail_together_without_artifact(pipeline, transformer, store):
    def failing_transform(raw_path, width, height):
        time.sleep(0.2)
        raise TransformError("convert exited with code 1", kind=TransformErrorKind.RESIZE_FAILED, returncode=1)

    transformer.transform.side_effect = failing_transform

    def attempt(_):
        try:
            return pipeline.resolve(SOURCE, 800, 600)
        except TransformError as e:
            return e

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(attempt, range(6)))

    assert all(isinstance(o, TransformError) for o in outcomes)
    assert store.lookup_resolved(KEY, 800, 600) is None


def test_concurrent_different_resolutions_fetch_raw_once(pipeline, fetcher, transformer):
    fake_fetch = fetcher.fetch.side_effect

    def slow_fetch(url, destination):
        time.sleep(0.3)
        return fake_fetch(url, destination)

    fetcher.fetch.side_effect = slow_fetch
    sizes = [(800, 600), (400, 300), (1920, 1080), (64, 64)]

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda s: pipeline.resolve(SOURCE, *s), sizes))

    assert results == [f"jpeg-{w}x{h}".encode() for w, h in sizes]
    assert fetcher.fetch.call_count == 1
    assert transformer.transform.call_count == 4


def test_unusable_work_directory_leaves_no_resolved_artifact(config, store, fetcher, cache_root):
    blocker = cache_root / "blocker"
    blocker.write_bytes(b"")
    pipeline = Pipeline(
        config,
        store=store,
        fetcher=fetcher,
        transformer=SimulatedTransformer(work_dir=blocker / "work")
    )

    with pytest.raises(TransformError) as exc_info:
        pipeline.resolve(SOURCE, 800, 600)

    assert exc_info.value.kind == TransformErrorKind.UPSCALE_FAILED
    assert store.lookup_resolved(KEY, 800, 600) is None

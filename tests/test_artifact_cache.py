"""缩略图缓存测试。"""

from __future__ import annotations

import io
import threading

import pytest
from PIL import Image

from modules.utils.cache import LRUCache, ThumbnailCache
from modules.utils.errors import StoreError


def png_bytes(size=(256, 128), color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class CountingLoader:
    """Byte loader that counts calls and can block until released."""

    def __init__(self, payloads: dict[str, bytes], gate: threading.Event | None = None) -> None:
        self.payloads = payloads
        self.gate = gate
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, record_id: str) -> bytes:
        with self._lock:
            self.calls.append(record_id)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if record_id not in self.payloads:
            raise StoreError(f"missing {record_id}")
        return self.payloads[record_id]


@pytest.fixture
def make_cache():
    caches: list[ThumbnailCache] = []

    def _make(loader, **kwargs) -> ThumbnailCache:
        cache = ThumbnailCache(loader, **kwargs)
        caches.append(cache)
        return cache

    yield _make
    for cache in caches:
        cache.shutdown()


def test_lru_evicts_by_count():
    cache: LRUCache[str, str] = LRUCache(count_limit=2, cost_limit=1000)
    cache.set("a", "A", 1)
    cache.set("b", "B", 1)
    cache.get("a")
    cache.set("c", "C", 1)

    assert "a" in cache
    assert "b" not in cache
    assert len(cache) == 2


def test_lru_evicts_by_cost():
    cache: LRUCache[str, str] = LRUCache(count_limit=10, cost_limit=100)
    cache.set("a", "A", 60)
    cache.set("b", "B", 60)

    assert "a" not in cache
    assert cache.total_cost == 60


def test_lru_oversized_entry_not_retained():
    cache: LRUCache[str, str] = LRUCache(count_limit=10, cost_limit=100)
    cache.set("big", "X", 500)

    assert "big" not in cache
    assert cache.total_cost == 0


def test_lru_rejects_non_positive_limits():
    with pytest.raises(ValueError):
        LRUCache(count_limit=0)


def test_thumbnail_bounded_and_cached(make_cache):
    loader = CountingLoader({"r1": png_bytes((1024, 512))})
    cache = make_cache(loader)

    first = cache.get_thumbnail("r1", (64, 64), timeout=5)
    second = cache.get_thumbnail("r1", (64, 64), timeout=5)

    assert first is second
    assert max(first.size) <= 128
    assert loader.calls == ["r1"]
    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 1


def test_sizes_are_cached_independently(make_cache):
    loader = CountingLoader({"r1": png_bytes((1024, 512))})
    cache = make_cache(loader)

    small = cache.get_thumbnail("r1", (32, 32), timeout=5)
    large = cache.get_thumbnail("r1", (200, 200), timeout=5)

    assert max(small.size) <= 64
    assert max(large.size) <= 400
    assert len(loader.calls) == 2


def test_concurrent_misses_share_one_decode(make_cache):
    gate = threading.Event()
    loader = CountingLoader({"r1": png_bytes()}, gate=gate)
    cache = make_cache(loader, max_workers=4)

    futures = [cache.get("r1", (64, 64)) for _ in range(5)]
    gate.set()
    results = [future.result(timeout=5) for future in futures]

    assert all(result is results[0] for result in results)
    assert loader.calls == ["r1"]


def test_undecodable_bytes_resolve_to_none(make_cache):
    loader = CountingLoader({"bad": b"not an image"})
    cache = make_cache(loader)

    assert cache.get_thumbnail("bad", (64, 64), timeout=5) is None
    assert cache.stats().count == 0


def test_store_failure_propagates(make_cache):
    cache = make_cache(CountingLoader({}))

    with pytest.raises(StoreError):
        cache.get_thumbnail("missing", (64, 64), timeout=5)


def test_invalidate_drops_every_size(make_cache):
    loader = CountingLoader({"r1": png_bytes(), "r2": png_bytes()})
    cache = make_cache(loader)
    cache.get_thumbnail("r1", (32, 32), timeout=5)
    cache.get_thumbnail("r1", (64, 64), timeout=5)
    cache.get_thumbnail("r2", (32, 32), timeout=5)

    assert cache.invalidate("r1") == 2
    assert cache.stats().count == 1


def corrupt_png() -> bytes:
    buffer = io.BytesIO()
    Image.effect_noise((256, 128), 64).convert("RGB").save(buffer, format="PNG")
    data = bytearray(buffer.getvalue())
    # 篡改 IDAT 分块长度，文件头仍然有效
    data[data.find(b"IDAT") - 1] = 0x43
    return bytes(data)


def truncated_jpeg() -> bytes:
    buffer = io.BytesIO()
    Image.effect_noise((256, 256), 64).convert("RGB").save(buffer, format="JPEG")
    data = buffer.getvalue()
    return data[: len(data) // 2]


@pytest.mark.parametrize("payload", [corrupt_png(), truncated_jpeg()], ids=["png", "jpeg"])
def test_corrupt_body_resolves_to_none(make_cache, payload):
    cache = make_cache(CountingLoader({"r1": payload}))

    assert cache.get_thumbnail("r1", (64, 64), timeout=5) is None
    assert cache.stats().count == 0


def test_invalidate_during_decode_discards_result(make_cache):
    gate = threading.Event()
    loader = CountingLoader({"r1": png_bytes()}, gate=gate)
    cache = make_cache(loader)

    future = cache.get("r1", (64, 64))
    cache.invalidate("r1")
    gate.set()

    assert future.result(timeout=5) is not None
    assert cache.stats().count == 0


def test_request_after_invalidate_decodes_again(make_cache):
    gate = threading.Event()
    loader = CountingLoader({"r1": png_bytes()}, gate=gate)
    cache = make_cache(loader)

    stale = cache.get("r1", (64, 64))
    cache.invalidate("r1")
    fresh = cache.get("r1", (64, 64))
    gate.set()

    assert fresh is not stale
    assert fresh.result(timeout=5) is not None
    stale.result(timeout=5)
    assert loader.calls == ["r1", "r1"]
    assert cache.stats().count == 1


def test_clear_during_decode_discards_result(make_cache):
    gate = threading.Event()
    cache = make_cache(CountingLoader({"r1": png_bytes()}, gate=gate))

    future = cache.get("r1", (64, 64))
    cache.clear()
    gate.set()
    future.result(timeout=5)

    assert cache.stats().count == 0

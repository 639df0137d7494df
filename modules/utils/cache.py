"""Bounded thumbnail cache with background decoding."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

from modules.utils.errors import CacheDecodeError
from modules.utils.image_utils import generate_thumbnail, raster_cost

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_COUNT_LIMIT = 100
DEFAULT_COST_LIMIT = 50 * 1024 * 1024

ThumbnailKey = Tuple[str, Tuple[int, int]]


@dataclass
class CacheEntry(Generic[V]):
    """Cached value with its approximate cost in bytes."""

    value: V
    cost: int


@dataclass(frozen=True)
class CacheStats:
    count: int
    total_cost: int
    hits: int
    misses: int


class LRUCache(Generic[K, V]):
    """Least-recently-used cache bounded by entry count and total cost."""

    def __init__(self, count_limit: int = DEFAULT_COUNT_LIMIT, cost_limit: int = DEFAULT_COST_LIMIT) -> None:
        if count_limit <= 0 or cost_limit <= 0:
            raise ValueError("cache limits must be positive")
        self.count_limit = count_limit
        self.cost_limit = cost_limit
        self._data: "OrderedDict[K, CacheEntry[V]]" = OrderedDict()
        self._total_cost = 0
        self._lock = threading.Lock()

    def get(self, key: K) -> Optional[V]:
        """Return the value and mark it as most recently used."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            self._data.move_to_end(key)
            return entry.value

    def set(self, key: K, value: V, cost: int) -> None:
        """Insert a value, evicting least recently used entries until both limits hold."""
        with self._lock:
            previous = self._data.pop(key, None)
            if previous is not None:
                self._total_cost -= previous.cost
            self._data[key] = CacheEntry(value=value, cost=max(0, cost))
            self._total_cost += max(0, cost)
            while self._data and (len(self._data) > self.count_limit or self._total_cost > self.cost_limit):
                evicted_key, evicted = self._data.popitem(last=False)
                self._total_cost -= evicted.cost
                logger.debug("Evicted %r (%d bytes)", evicted_key, evicted.cost)

    def remove_where(self, predicate: Callable[[K], bool]) -> int:
        with self._lock:
            doomed = [key for key in self._data if predicate(key)]
            for key in doomed:
                self._total_cost -= self._data.pop(key).cost
            return len(doomed)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    @property
    def total_cost(self) -> int:
        with self._lock:
            return self._total_cost

    def clear(self) -> None:
        """Remove all entries."""
        with self._lock:
            self._data.clear()
            self._total_cost = 0


class ThumbnailCache:
    """Serve downsampled rasters for history records.

    Misses are decoded on a background executor. Concurrent misses for the same
    key share a single in-flight decode. Undecodable bytes resolve to ``None``.
    """

    def __init__(
        self,
        load_bytes: Callable[[str], bytes],
        count_limit: int = DEFAULT_COUNT_LIMIT,
        cost_limit: int = DEFAULT_COST_LIMIT,
        max_workers: int = 2,
    ) -> None:
        self._load_bytes = load_bytes
        self._cache: LRUCache[ThumbnailKey, Any] = LRUCache(count_limit, cost_limit)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="thumbnail-decode")
        self._inflight: Dict[ThumbnailKey, "Future[Optional[Any]]"] = {}
        self._inflight_lock = threading.Lock()
        # 失效计数：解码期间被 invalidate/clear 的结果不再写入缓存
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._hits = 0
        self._misses = 0

    @staticmethod
    def make_key(record_id: str, size: Tuple[int, int]) -> ThumbnailKey:
        return (record_id, (int(size[0]), int(size[1])))

    def get(self, record_id: str, size: Tuple[int, int]) -> "Future[Optional[Any]]":
        """Return a future resolving to the thumbnail for ``record_id`` at ``size``."""
        key = self.make_key(record_id, size)
        with self._inflight_lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._hits += 1
                done: "Future[Optional[Any]]" = Future()
                done.set_result(cached)
                return done
            pending = self._inflight.get(key)
            if pending is not None:
                return pending
            self._misses += 1
            future = self._executor.submit(self._decode, key, self._generation_of(record_id))
            self._inflight[key] = future
        future.add_done_callback(lambda done_future, _key=key: self._forget(_key, done_future))
        return future

    def get_thumbnail(self, record_id: str, size: Tuple[int, int], timeout: Optional[float] = None) -> Optional[Any]:
        """Blocking form of :meth:`get`."""
        return self.get(record_id, size).result(timeout=timeout)

    def _forget(self, key: ThumbnailKey, future: "Future[Optional[Any]]") -> None:
        with self._inflight_lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    def _generation_of(self, record_id: str) -> Tuple[int, int]:
        return (self._epoch, self._generations.get(record_id, 0))

    def _decode(self, key: ThumbnailKey, generation: Tuple[int, int]) -> Optional[Any]:
        record_id, (width, height) = key
        data = self._load_bytes(record_id)
        max_pixel = max(1, 2 * max(width, height))
        try:
            thumbnail = generate_thumbnail(data, max_pixel)
        except CacheDecodeError as exc:
            logger.warning("Thumbnail decode failed for %s: %s", record_id, exc)
            return None
        with self._inflight_lock:
            if self._generation_of(record_id) == generation:
                self._cache.set(key, thumbnail, raster_cost(thumbnail))
            else:
                logger.debug("Discarding stale thumbnail for %s", record_id)
        return thumbnail

    def invalidate(self, record_id: str) -> int:
        """Drop every cached size for ``record_id``, including decodes still running."""
        with self._inflight_lock:
            self._generations[record_id] = self._generations.get(record_id, 0) + 1
            for key in [key for key in self._inflight if key[0] == record_id]:
                del self._inflight[key]
            return self._cache.remove_where(lambda key: key[0] == record_id)

    def clear(self) -> None:
        with self._inflight_lock:
            self._epoch += 1
            self._generations.clear()
            self._inflight.clear()
            self._cache.clear()

    def stats(self) -> CacheStats:
        return CacheStats(
            count=len(self._cache),
            total_cost=self._cache.total_cost,
            hits=self._hits,
            misses=self._misses,
        )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

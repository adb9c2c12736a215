"""带 TTL 与单飞去重（single-flight）的异步缓存。"""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar

from cachetools import LRUCache, TTLCache

from config import CACHE_MAX_ENTRIES

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TtlCache(Generic[K, V]):
    """
    键值缓存：条目超过 TTL 后视为过期，但仍保留为“最后已知值”。

    新鲜值放在 cachetools.TTLCache 中按时间淘汰，最后已知值放在有容量上限的 LRUCache 中。
    同一键的并发未命中只触发一次 fetcher，其余调用方等待同一个结果；
    fetcher 抛出的异常会传递给所有等待者，且不会写入缓存。
    """

    def __init__(
        self,
        ttl: float,
        clock: Optional[Callable[[], float]] = None,
        maxsize: int = CACHE_MAX_ENTRIES,
    ) -> None:
        self._fresh: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=clock or time.monotonic)
        self._last_known: LRUCache = LRUCache(maxsize=maxsize)
        self._inflight: Dict[K, "asyncio.Future[V]"] = {}
        self._lock = asyncio.Lock()

    def get_fresh(self, key: K) -> Optional[V]:
        return self._fresh.get(key)

    def get_stale(self, key: K) -> Optional[V]:
        """返回最后一次写入的值，不论是否过期。"""
        return self._last_known.get(key)

    def put(self, key: K, value: V) -> None:
        self._fresh[key] = value
        self._last_known[key] = value

    def invalidate(self, key: K) -> None:
        self._fresh.pop(key, None)
        self._last_known.pop(key, None)

    def clear(self) -> None:
        self._fresh.clear()
        self._last_known.clear()

    async def get_or_fetch(self, key: K, fetcher: Callable[[], Awaitable[V]]) -> V:
        async with self._lock:
            cached = self.get_fresh(key)
            if cached is not None:
                return cached
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = asyncio.get_running_loop().create_future()
                self._inflight[key] = future

        if not owner:
            # shield：某个等待者被取消时不影响其他等待者
            return await asyncio.shield(future)

        try:
            value = await fetcher()
        except BaseException as exc:
            async with self._lock:
                self._inflight.pop(key, None)
            if not future.done():
                if isinstance(exc, asyncio.CancelledError):
                    future.cancel()
                else:
                    future.set_exception(exc)
                    # 没有其他等待者时避免 "exception was never retrieved" 警告
                    future.exception()
            raise

        async with self._lock:
            self.put(key, value)
            self._inflight.pop(key, None)
        future.set_result(value)
        return value

"""Client-side proxy for slow image loading: lazy loads, caching and coalescing."""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

import structlog

from dbproxy.cache import MISS, CacheStore


logger = structlog.get_logger(__name__)

IMAGE_PREFIX = "image:"
INFO_PREFIX = "image-info:"


class ImageLoader(ABC):
    @abstractmethod
    async def load_image(self, url: str) -> str: ...

    @abstractmethod
    async def get_image_info(self, url: str) -> Dict[str, Any]: ...


class SimulatedImageLoader(ImageLoader):
    """Network loader stand-in that sleeps and fabricates image data."""

    FORMATS = ("JPEG", "PNG", "WEBP", "GIF")

    def __init__(
        self,
        *,
        load_latency: float = 0.8,
        info_latency: float = 0.2,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.load_latency = load_latency
        self.info_latency = info_latency
        self.loads = 0
        self.info_requests = 0
        self._rng = rng or random.Random()

    async def load_image(self, url: str) -> str:
        logger.info("image.network_load", url=url)
        await asyncio.sleep(self.load_latency)
        self.loads += 1
        return f"Image data for {url} ({self._rng.randint(1000, 5000)}KB)"

    async def get_image_info(self, url: str) -> Dict[str, Any]:
        logger.info("image.metadata_fetch", url=url)
        await asyncio.sleep(self.info_latency)
        self.info_requests += 1
        return {
            "url": url,
            "size": f"{self._rng.randint(500, 2000)}KB",
            "dimensions": f"{self._rng.randint(800, 4000)}x{self._rng.randint(600, 3000)}",
            "format": self._rng.choice(self.FORMATS),
        }


class ImageProxy(ImageLoader):
    """Caches images and metadata; concurrent loads of one URL share a single fetch."""

    def __init__(self, loader: ImageLoader, cache: Optional[CacheStore] = None) -> None:
        self._loader = loader
        self._cache = cache or CacheStore()
        self._loading: Dict[str, asyncio.Task] = {}

    @property
    def loading(self) -> List[str]:
        return list(self._loading)

    async def load_image(self, url: str) -> str:
        key = f"{IMAGE_PREFIX}{url}"
        cached = await self._cache.get(key)
        if cached is not MISS:
            logger.debug("image.cache_hit", url=url)
            return cached

        task = self._loading.get(url)
        if task is None:
            task = asyncio.create_task(self._load_and_store(url, key))
            self._loading[url] = task
            task.add_done_callback(lambda _task, url=url: self._loading.pop(url, None))
            task.add_done_callback(self._collect_failure)
        else:
            logger.debug("image.already_loading", url=url)
        return await asyncio.shield(task)

    @staticmethod
    def _collect_failure(task: asyncio.Task) -> None:
        # read the exception even when every awaiter was cancelled
        if not task.cancelled() and task.exception() is not None:
            logger.debug("image.load_failed", error=str(task.exception()))

    async def _load_and_store(self, url: str, key: str) -> str:
        data = await self._loader.load_image(url)
        await self._cache.put(key, data)
        logger.info("image.loaded", url=url)
        return data

    async def get_image_info(self, url: str) -> Dict[str, Any]:
        key = f"{INFO_PREFIX}{url}"
        cached = await self._cache.get(key)
        if cached is not MISS:
            return cached
        info = await self._loader.get_image_info(url)
        await self._cache.put(key, info)
        return info

    async def preload_images(self, urls: Iterable[str]) -> Dict[str, Optional[str]]:
        """Load every URL concurrently; failures are logged and reported as ``None``."""
        urls = list(urls)
        results = await asyncio.gather(*(self.load_image(url) for url in urls), return_exceptions=True)
        outcome: Dict[str, Optional[str]] = {}
        for url, result in zip(urls, results):
            if isinstance(result, Exception):
                logger.error("image.preload_failed", url=url, error=str(result))
                outcome[url] = None
            else:
                outcome[url] = result
        return outcome

    async def clear_cache(self) -> None:
        await self._cache.invalidate(IMAGE_PREFIX)
        await self._cache.invalidate(INFO_PREFIX)
        logger.info("image.cache_cleared")


__all__ = ["ImageLoader", "ImageProxy", "SimulatedImageLoader"]

from __future__ import annotations

import asyncio
import gc
import random

import pytest

from dbproxy.image_proxy import ImageProxy, SimulatedImageLoader


class FlakyLoader(SimulatedImageLoader):
    async def load_image(self, url: str) -> str:
        if "broken" in url:
            raise ConnectionError(f"cannot reach {url}")
        return await super().load_image(url)


def make_loader(**kwargs) -> SimulatedImageLoader:
    kwargs.setdefault("load_latency", 0)
    kwargs.setdefault("info_latency", 0)
    return SimulatedImageLoader(rng=random.Random(7), **kwargs)


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_fetch() -> None:
    loader = make_loader(load_latency=0.05)
    images = ImageProxy(loader)

    results = await asyncio.gather(*(images.load_image("https://example.com/a.png") for _ in range(5)))

    assert len(set(results)) == 1
    assert loader.loads == 1
    assert images.loading == []


@pytest.mark.asyncio
async def test_loaded_image_is_cached() -> None:
    loader = make_loader()
    images = ImageProxy(loader)

    first = await images.load_image("https://example.com/a.png")
    second = await images.load_image("https://example.com/a.png")

    assert first == second
    assert first.startswith("Image data for https://example.com/a.png")
    assert loader.loads == 1


@pytest.mark.asyncio
async def test_metadata_cached_separately_from_image() -> None:
    loader = make_loader()
    images = ImageProxy(loader)

    info = await images.get_image_info("https://example.com/a.png")
    again = await images.get_image_info("https://example.com/a.png")

    assert info is again
    assert set(info) == {"url", "size", "dimensions", "format"}
    assert info["format"] in SimulatedImageLoader.FORMATS
    assert loader.info_requests == 1
    assert loader.loads == 0


@pytest.mark.asyncio
async def test_preload_reports_failures_without_raising() -> None:
    loader = FlakyLoader(load_latency=0, info_latency=0)
    images = ImageProxy(loader)

    outcome = await images.preload_images(["https://example.com/ok.png", "https://example.com/broken.png"])

    assert outcome["https://example.com/broken.png"] is None
    assert outcome["https://example.com/ok.png"].startswith("Image data")
    assert loader.loads == 1


@pytest.mark.asyncio
async def test_clear_cache_forces_reload() -> None:
    loader = make_loader()
    images = ImageProxy(loader)
    await images.load_image("https://example.com/a.png")
    await images.get_image_info("https://example.com/a.png")

    await images.clear_cache()
    await images.load_image("https://example.com/a.png")
    await images.get_image_info("https://example.com/a.png")

    assert loader.loads == 2
    assert loader.info_requests == 2


@pytest.mark.asyncio
async def test_failed_load_with_no_awaiters_left_is_collected() -> None:
    gate = asyncio.Event()

    class GatedBrokenLoader(SimulatedImageLoader):
        async def load_image(self, url: str) -> str:
            await gate.wait()
            raise ConnectionError(f"cannot reach {url}")

    loop = asyncio.get_running_loop()
    reported = []
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    images = ImageProxy(GatedBrokenLoader(load_latency=0, info_latency=0))

    waiters = [asyncio.create_task(images.load_image("https://example.com/a.png")) for _ in range(2)]
    await asyncio.sleep(0)
    for waiter in waiters:
        waiter.cancel()
    await asyncio.gather(*waiters, return_exceptions=True)
    gate.set()
    while images.loading:
        await asyncio.sleep(0)
    del waiters
    gc.collect()
    loop.set_exception_handler(None)

    assert not [context for context in reported if "never retrieved" in context.get("message", "")]

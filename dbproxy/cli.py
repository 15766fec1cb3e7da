"""Command line demos for the database and image proxies."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from dbproxy.app import ServerApplication, build_proxy
from dbproxy.config import Settings, get_settings
from dbproxy.exceptions import ProxyError
from dbproxy.image_proxy import ImageProxy, SimulatedImageLoader
from dbproxy.logging import configure_logging
from dbproxy.provider import SimulatedDatabase, SqlAlchemyProvider


GALLERY_URLS = [
    "https://example.com/image1.jpg",
    "https://example.com/image2.png",
    "https://example.com/image3.webp",
    "https://example.com/image4.gif",
]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Caching proxy demonstrations")
    parser.add_argument("--capacity", type=int, help="Maximum number of pooled connections")
    parser.add_argument(
        "--latency-scale",
        type=float,
        default=1.0,
        help="Multiply every simulated latency (0 disables sleeping)",
    )
    parser.add_argument("--backend", choices=["simulated", "sqlalchemy"], help="Connection provider backend")
    parser.add_argument("--database-url", help="SQLAlchemy URL used by the sqlalchemy backend")
    parser.add_argument("--json-logs", action="store_true", default=None, help="Emit JSON log lines")
    parser.add_argument("--console-logs", dest="json_logs", action="store_false", default=None, help="Emit human readable logs")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("server", help="Replay the server-side database proxy scenario")
    subparsers.add_parser("images", help="Replay the client-side image gallery scenario")
    args = parser.parse_args(argv)
    if args.latency_scale < 0:
        parser.error("--latency-scale must not be negative")
    if args.capacity is not None and args.capacity < 1:
        parser.error("--capacity must be at least 1")
    return args


def resolve_settings(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    settings = base or get_settings()
    provider = settings.provider
    scale = args.latency_scale
    provider_updates = {
        "connect_latency": provider.connect_latency * scale,
        "query_latency": provider.query_latency * scale,
        "update_latency": provider.update_latency * scale,
        "user_latency": provider.user_latency * scale,
        "product_latency": provider.product_latency * scale,
    }
    if args.backend:
        provider_updates["backend"] = args.backend
    if args.database_url:
        provider_updates["database_url"] = args.database_url

    updates = {"provider": provider.model_copy(update=provider_updates)}
    if args.capacity is not None:
        updates["pool"] = settings.pool.model_copy(update={"capacity": args.capacity})
    if args.json_logs is not None:
        updates["json_logs"] = args.json_logs
    return settings.model_copy(update=updates)


async def seed_demo_rows(provider: SqlAlchemyProvider) -> None:
    await provider.seed(
        user_rows=[SimulatedDatabase.default_user(f"user{index}") for index in range(1, 6)],
        product_rows=[SimulatedDatabase.default_product(f"product{index}") for index in range(1, 4)],
    )


async def run_server_demo(settings: Settings) -> int:
    print("=== Database Access Proxy (Server Side) ===")
    proxy = build_proxy(settings)
    if isinstance(proxy.pool.provider, SqlAlchemyProvider):
        await seed_demo_rows(proxy.pool.provider)
    server = ServerApplication(proxy)
    try:
        for index in range(1, 6):
            user = await server.handle_user_request(f"user{index}")
            print(f"User data: {user}")
        for index in (1, 2):
            user = await server.handle_user_request(f"user{index}")
            print(f"User data (repeat): {user}")
        for index in range(1, 4):
            product = await server.handle_product_request(f"product{index}")
            print(f"Product data: {product}")

        rows = await server.update_user("user1", "John Updated")
        print(f"Update completed: {rows} rows affected")
        user = await server.handle_user_request("user1")
        print(f"User data: {user}")

        stats = server.database.stats()
        print("=== Proxy Statistics ===")
        print(f"Cache hits: {stats.hits}  misses: {stats.misses}  invalidations: {stats.invalidations}")
        print(
            f"Connections created: {stats.pool.created}  reused: {stats.pool.reused}  "
            f"capacity: {stats.pool.capacity}"
        )
    finally:
        await server.shutdown()
    return 0


async def run_image_demo(latency_scale: float = 1.0) -> int:
    print("=== Image Loading Proxy (Client Side) ===")
    images = ImageProxy(
        SimulatedImageLoader(load_latency=0.8 * latency_scale, info_latency=0.2 * latency_scale)
    )
    await images.preload_images(GALLERY_URLS[:2])
    for index, url in enumerate(GALLERY_URLS, start=1):
        data = await images.load_image(url)
        print(f"--- Image {index} --- {data[:40]}")

    info = await images.get_image_info(GALLERY_URLS[0])
    print("Image information:")
    for key, value in info.items():
        print(f"   {key}: {value}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = resolve_settings(args)
    configure_logging(level=settings.log_level, json_logs=settings.json_logs)

    if args.command == "images":
        return asyncio.run(run_image_demo(args.latency_scale))
    return asyncio.run(run_server_demo(settings))


def run() -> None:  # pragma: no cover - console script entrypoint
    try:
        raise SystemExit(main())
    except ProxyError as exc:
        print(f"Proxy error: {exc}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    run()

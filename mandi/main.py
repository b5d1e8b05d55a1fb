#!/usr/bin/env python3
"""Mandi Price Discovery.

Fetches agricultural commodity prices from multiple public market data
sources, filters anomalies, aggregates them into one snapshot per commodity
and keeps the cache warm during market hours.

Configure with CLI flags or environment variables (CLI args take precedence).
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from .src.AlertDispatcher import LoggingNotificationSink, WebhookNotificationSink
from .src.CacheTier import CacheTier, RedisCacheBackend
from .src.errors import PriceDiscoveryError
from .src.fetchers import get_available_fetchers
from .src.PriceDiscovery import SUPPORTED_COMMODITIES, PriceDiscovery
from .src.PriceStore import SqlitePriceStore
from .src.RefreshScheduler import RefreshScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_api_keys(api_key_str: str | None) -> dict[str, str]:
    """Parse comma-separated API key string into a dictionary.

    Format: source1=key1,source2=key2
    Example: agmarknet=abc123,datagov=xyz789

    :param api_key_str: Comma-separated API key string.
    :returns: Dict mapping source names to API keys.
    """
    if not api_key_str:
        return {}

    api_keys = {}
    for item in api_key_str.split(","):
        item = item.strip()
        if "=" in item:
            source, key = item.split("=", 1)
            api_keys[source.strip().lower()] = key.strip()
    return api_keys


def parse_env_api_keys() -> dict[str, str]:
    """Parse API keys from individual environment variables.

    Looks for: API_KEY_AGMARKNET, API_KEY_DATAGOV, etc.

    :returns: Dict mapping source names to API keys.
    """
    api_keys = {}
    prefixes = ["API_KEY_", "APIKEY_"]

    for key, value in os.environ.items():
        for prefix in prefixes:
            if key.startswith(prefix) and value:
                source = key[len(prefix):].lower()
                api_keys[source] = value
                break

    return api_keys


def parse_market_hours(value: str) -> tuple[int, int]:
    """Parse an "open-close" hour range such as "9-18".

    :raises ValueError: If the range is malformed or out of order.
    """
    try:
        start_str, end_str = value.split("-", 1)
        start, end = int(start_str), int(end_str)
    except ValueError as e:
        raise ValueError(f"Invalid market hours '{value}', expected e.g. 9-18") from e
    if not (0 <= start <= end <= 23):
        raise ValueError(f"Invalid market hours '{value}', expected 0 <= open <= close <= 23")
    return start, end


def build_parser(available_sources: list[str]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mandi Price Discovery: resilient multi-source commodity prices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price sources:
  {', '.join(available_sources)}

Examples:
  # Print current prices once and exit
  python -m mandi.main --commodities Wheat,Onion --once

  # Keep the cache warm with Redis and a SQLite history store
  python -m mandi.main --redis-url redis://localhost:6379/0 \\
      --db-path data/mandi.db --api-keys agmarknet=your-api-key

Environment variables (CLI args take precedence):
  COMMODITIES, SOURCES, REFRESH_PERIOD, MARKET_HOURS, FETCH_TIMEOUT,
  REQUEST_TIMEOUT, RETRY_COUNT, REDIS_URL, DB_PATH, WEBHOOK_URL, API_KEYS,
  API_KEY_AGMARKNET, API_KEY_DATAGOV
""",
    )

    parser.add_argument(
        "--commodities",
        type=str,
        help="Comma-separated commodities to track (default: all supported)",
        default=os.environ.get("COMMODITIES") or ",".join(SUPPORTED_COMMODITIES),
    )

    parser.add_argument(
        "--sources",
        type=str,
        help=f"Comma-separated price sources. Available: {', '.join(available_sources)}",
        default=os.environ.get("SOURCES") or ",".join(available_sources),
    )

    parser.add_argument(
        "--refresh-period",
        dest="refresh_period",
        type=int,
        help="Seconds between cache refresh rounds (minimum: 60, default: 900)",
        default=int(os.environ.get("REFRESH_PERIOD") or "900"),
    )

    parser.add_argument(
        "--market-hours",
        dest="market_hours",
        type=str,
        help="Local hours during which prices are refreshed (default: 9-18)",
        default=os.environ.get("MARKET_HOURS") or "9-18",
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Timeout for one source attempt in seconds (default: 5.0)",
        default=float(os.environ.get("FETCH_TIMEOUT") or "5.0"),
    )

    parser.add_argument(
        "--request-timeout",
        dest="request_timeout",
        type=float,
        help="Overall timeout for a fan-out to all sources in seconds (default: 8.0)",
        default=float(os.environ.get("REQUEST_TIMEOUT") or "8.0"),
    )

    parser.add_argument(
        "--retry-count",
        dest="retry_count",
        type=int,
        help="Retries per source after a failed attempt (default: 2)",
        default=int(os.environ.get("RETRY_COUNT") or "2"),
    )

    parser.add_argument(
        "--redis-url",
        dest="redis_url",
        type=str,
        help="Redis URL for the snapshot cache (default: in-memory cache)",
        default=os.environ.get("REDIS_URL"),
    )

    parser.add_argument(
        "--db-path",
        dest="db_path",
        type=str,
        help="SQLite database for price history and alert subscriptions",
        default=os.environ.get("DB_PATH"),
    )

    parser.add_argument(
        "--webhook-url",
        dest="webhook_url",
        type=str,
        help="Webhook receiving volatility alerts (default: log only)",
        default=os.environ.get("WEBHOOK_URL"),
    )

    parser.add_argument(
        "--api-keys",
        dest="api_keys",
        type=str,
        help="Comma-separated API keys (e.g., agmarknet=abc,datagov=xyz)",
        default=os.environ.get("API_KEYS"),
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Fetch current prices once, print them as JSON and exit",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    return parser


async def print_snapshots(discovery: PriceDiscovery, commodities: list[str]) -> int:
    """Print one JSON line per commodity.

    :returns: Number of commodities without data.
    """
    missing = 0
    for commodity in commodities:
        try:
            snapshot = await discovery.get_current_price(commodity)
        except PriceDiscoveryError as e:
            logger.error(str(e))
            missing += 1
            continue
        print(json.dumps(snapshot.to_dict(), sort_keys=True))
    return missing


async def run(args: argparse.Namespace, commodities: list[str], sources: list[str]) -> int:
    api_keys = parse_env_api_keys()
    api_keys.update(parse_api_keys(args.api_keys))

    cache = CacheTier(RedisCacheBackend.from_url(args.redis_url)) if args.redis_url else CacheTier()

    store = None
    if args.db_path:
        store = SqlitePriceStore(args.db_path)
        await store.initialize()

    sink = WebhookNotificationSink(args.webhook_url) if args.webhook_url else LoggingNotificationSink()

    discovery = PriceDiscovery(
        sources=sources,
        api_keys=api_keys,
        cache=cache,
        store=store,
        sink=sink,
        fetch_timeout=args.fetch_timeout,
        overall_timeout=args.request_timeout,
        retry_count=args.retry_count,
    )

    try:
        if args.once:
            missing = await print_snapshots(discovery, commodities)
            return 1 if missing == len(commodities) else 0

        scheduler = RefreshScheduler(
            discovery,
            commodities,
            refresh_period=args.refresh_period,
            market_hours=parse_market_hours(args.market_hours),
        )
        await scheduler.run()
        return 0
    finally:
        await discovery.close()


def main() -> None:
    """Main entry point for the Mandi Price Discovery CLI."""
    available_sources = get_available_fetchers()
    parser = build_parser(available_sources)
    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if args.refresh_period < 60:
        parser.error("--refresh-period must be at least 60 seconds")

    if args.fetch_timeout <= 0 or args.request_timeout <= 0:
        parser.error("--fetch-timeout and --request-timeout must be positive")

    if args.retry_count < 0:
        parser.error("--retry-count must not be negative")

    try:
        parse_market_hours(args.market_hours)
    except ValueError as e:
        parser.error(str(e))

    commodities = [c.strip() for c in args.commodities.split(",") if c.strip()]
    sources = [s.strip().lower() for s in args.sources.split(",") if s.strip()]

    if not commodities:
        parser.error("At least one commodity must be specified")

    if not sources:
        parser.error("At least one source must be specified")

    invalid_sources = [s for s in sources if s not in available_sources]
    if invalid_sources:
        parser.error(
            f"Unknown sources: {invalid_sources}. "
            f"Available: {', '.join(available_sources)}"
        )

    # Log configuration
    logger.info("=" * 60)
    logger.info("Mandi Price Discovery")
    logger.info("=" * 60)
    logger.info(f"Commodities:       {len(commodities)} ({', '.join(commodities[:5])}{'...' if len(commodities) > 5 else ''})")
    logger.info(f"Sources:           {', '.join(sources)}")
    logger.info(f"Refresh Period:    {args.refresh_period}s")
    logger.info(f"Market Hours:      {args.market_hours}")
    logger.info(f"Fetch Timeout:     {args.fetch_timeout}s (overall {args.request_timeout}s)")
    logger.info(f"Retries:           {args.retry_count}")
    logger.info(f"Cache:             {'redis' if args.redis_url else 'in-memory'}")
    logger.info(f"Store:             {args.db_path or 'disabled'}")
    logger.info("=" * 60)

    try:
        exit_code = asyncio.run(run(args, commodities, sources))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        exit_code = 0
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

"""Pricing service assembly and command line entry point."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from decimal import Decimal
from typing import Any

import structlog

from ..cache.backends import create_shared_cache
from ..cache.circuit import CircuitBreaker
from ..cache.tiered import CacheLevel, CacheNamespace, TieredCache
from ..chain.oracle import Web3TwapOracle
from ..chart.series import DEFAULT_TIMEFRAME, TIMEFRAMES, ChartSeriesBuilder
from ..config.settings import PROFILES, AppSettings, load_settings
from ..core.types import (
    ChartPoint,
    EntityRef,
    PairMetrics,
    ProtocolMetrics,
    TokenMetrics,
)
from ..metrics.aggregator import MetricsAggregator
from ..persist.memory import InMemoryStore
from ..persist.storage import SQLiteStorage
from ..price.resolver import PriceResolver

logger = structlog.get_logger(__name__)


class PricingService:
    """Wires storage, cache, oracle, resolver, metrics and charts together."""

    def __init__(self, settings: AppSettings, storage: Any = None) -> None:
        """Initialize the service with assembled components.

        Args:
            settings: Application settings
            storage: Repository object to use instead of SQLite storage
        """
        self.settings = settings
        self.running = False
        self._stop_event = asyncio.Event()
        self.components = self._assemble(settings, storage)

        logger.info(
            "Pricing service initialized",
            env=settings.env,
            shared_cache=self.components["shared_cache"] is not None,
            oracle=self.components["oracle"] is not None,
        )

    def _assemble(self, settings: AppSettings, storage: Any) -> dict[str, Any]:
        components: dict[str, Any] = {}

        # Storage
        if storage is None and settings.database_path.startswith("memory://"):
            storage = InMemoryStore()
            logger.info("Using in-memory storage")
        elif storage is None:
            storage = SQLiteStorage(db_path=settings.database_path)
            logger.info("Initialized SQLite storage", db_path=settings.database_path)
        components["storage"] = storage

        # Cache
        shared = create_shared_cache(settings.redis_url)
        breaker = CircuitBreaker(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_timeout_seconds,
        )
        components["shared_cache"] = shared
        components["cache"] = TieredCache.from_settings(settings, shared, breaker)

        # Oracle
        if settings.oracle_rpc_url and settings.oracle_address:
            components["oracle"] = Web3TwapOracle(
                rpc_url=settings.oracle_rpc_url,
                oracle_address=settings.oracle_address,
            )
            logger.info("Initialized TWAP oracle", address=settings.oracle_address)
        else:
            components["oracle"] = None
            logger.info("Oracle disabled (no RPC URL or address)")

        components["resolver"] = PriceResolver.from_settings(
            settings,
            tokens=storage,
            pairs=storage,
            cache=components["cache"],
            oracle=components["oracle"],
        )
        components["metrics"] = MetricsAggregator.from_settings(
            settings, components["resolver"], components["cache"], storage
        )
        components["charts"] = ChartSeriesBuilder(
            resolver=components["resolver"],
            cache=components["cache"],
            tokens=storage,
            pairs=storage,
            snapshots=storage,
            cache_ttl=settings.chart_cache_ttl_seconds,
            step_timeout=settings.step_timeout_seconds,
        )
        return components

    async def initialize(self) -> None:
        await self.components["storage"].initialize()

    # Prices

    async def get_usd_price(self, token_id: str) -> Decimal:
        return await self.components["resolver"].get_usd_price(token_id)

    async def get_usd_prices_bulk(self, token_ids: list[str]) -> dict[str, Decimal]:
        return await self.components["resolver"].get_usd_prices_bulk(token_ids)

    # Metrics

    async def get_protocol_metrics(
        self, force_refresh: bool = False
    ) -> ProtocolMetrics:
        return await self.components["metrics"].get_protocol_metrics(force_refresh)

    async def get_pair_metrics(
        self, pair_id: str, force_refresh: bool = False
    ) -> PairMetrics:
        return await self.components["metrics"].get_pair_metrics(
            pair_id, force_refresh
        )

    async def get_token_metrics(
        self, token_id: str, force_refresh: bool = False
    ) -> TokenMetrics:
        return await self.components["metrics"].get_token_metrics(
            token_id, force_refresh
        )

    async def mark_dirty(self, entity: EntityRef) -> None:
        await self.components["metrics"].mark_dirty(entity)

    # Charts

    async def get_series(
        self, token_address: str, timeframe: str = DEFAULT_TIMEFRAME, limit: int = 100
    ) -> list[ChartPoint]:
        return await self.components["charts"].get_series(
            token_address, timeframe, limit
        )

    # Cache administration

    async def invalidate_cache(
        self,
        namespace: CacheNamespace | str | None = None,
        level: CacheLevel | str = CacheLevel.ALL,
    ) -> None:
        """Drop one namespace (both tiers) or everything at ``level``."""
        cache: TieredCache = self.components["cache"]
        if namespace is None:
            await cache.clear_all(level)
        else:
            removed = await cache.invalidate_by_prefix(CacheNamespace(namespace))
            logger.info(
                "Cache namespace invalidated", namespace=namespace, removed=removed
            )

    def cache_stats(self) -> dict[str, Any]:
        return self.components["cache"].stats()

    # Lifecycle

    async def run_once(self) -> dict[str, int]:
        """Refresh every pair and token metric once."""
        try:
            result = await self.components["metrics"].update_all()
            logger.info("Metrics refresh completed", **result)
            return result
        except Exception as e:
            logger.error("Metrics refresh failed", error=str(e))
            return {"pairs": 0, "tokens": 0, "failed": 0}

    async def run_forever(self) -> None:
        """Refresh metrics every ``refresh_interval_seconds`` until stopped."""
        logger.info(
            "Starting pricing service",
            refresh_interval=self.settings.refresh_interval_seconds,
        )
        self.running = True
        self._stop_event.clear()
        cycle_count = 0

        try:
            while self.running:
                await self.run_once()
                cycle_count += 1

                if cycle_count % 10 == 0:
                    logger.info(
                        "Service metrics", cycles=cycle_count, cache=self.cache_stats()
                    )

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.settings.refresh_interval_seconds,
                    )
                except TimeoutError:
                    pass

        except asyncio.CancelledError:
            logger.info("Pricing service cancelled")
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the refresh loop and release cache and storage resources."""
        if self.components.get("closed"):
            return
        logger.info("Stopping pricing service")
        self.running = False
        self._stop_event.set()

        await self.components["cache"].close()
        if self.components["shared_cache"] is not None:
            await self.components["shared_cache"].close()
        await self.components["storage"].close()
        self.components["closed"] = True


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AMM price and metrics engine")
    parser.add_argument(
        "--config", default="configs/dev.yaml", help="Configuration file path"
    )
    parser.add_argument(
        "--profile", default="dev", choices=list(PROFILES), help="Configuration profile"
    )
    parser.add_argument("--log-level", default="INFO", help="Log level")

    commands = parser.add_subparsers(dest="command", required=True)

    price = commands.add_parser("price", help="Resolve USD prices")
    price.add_argument("token_ids", nargs="+", help="Token identifiers")

    metrics = commands.add_parser("metrics", help="Show protocol/pair/token metrics")
    metrics.add_argument(
        "kind", choices=["protocol", "pair", "token"], help="Entity kind"
    )
    metrics.add_argument("entity_id", nargs="?", help="Pair or token identifier")
    metrics.add_argument("--refresh", action="store_true", help="Force recompute")

    chart = commands.add_parser("chart", help="Show a token price series")
    chart.add_argument("token_address", help="Token contract address")
    chart.add_argument(
        "--timeframe", default=DEFAULT_TIMEFRAME, choices=sorted(TIMEFRAMES)
    )
    chart.add_argument("--limit", type=int, default=100)

    commands.add_parser("serve", help="Refresh metrics periodically")
    return parser


async def run_command(service: PricingService, args: argparse.Namespace) -> Any:
    """Execute a one-shot CLI command and return a JSON-ready result."""
    if args.command == "price":
        if len(args.token_ids) == 1:
            price = await service.get_usd_price(args.token_ids[0])
            return {args.token_ids[0]: str(price)}
        prices = await service.get_usd_prices_bulk(args.token_ids)
        return {token_id: str(price) for token_id, price in prices.items()}

    if args.command == "metrics":
        if args.kind == "protocol":
            result = await service.get_protocol_metrics(args.refresh)
        elif not args.entity_id:
            raise ValueError(f"{args.kind} metrics need an entity id")
        elif args.kind == "pair":
            result = await service.get_pair_metrics(args.entity_id, args.refresh)
        else:
            result = await service.get_token_metrics(args.entity_id, args.refresh)
        return result.model_dump()

    if args.command == "chart":
        series = await service.get_series(
            args.token_address, args.timeframe, args.limit
        )
        return [point.model_dump() for point in series]

    raise ValueError(f"Unknown command: {args.command}")


async def main(argv: list[str] | None = None) -> int:
    """Main entry point for the pricing engine."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = load_settings(args.profile, args.config)
        logger.info("Settings loaded", profile=args.profile, config=args.config)

        service = PricingService(settings)
        await service.initialize()
    except Exception as e:
        logger.error("Fatal error", error=str(e))
        return 1

    if args.command == "serve":
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(
                signum, lambda: asyncio.create_task(service.stop())
            )
        await service.run_forever()
        return 0

    try:
        result = await run_command(service, args)
        print(json.dumps(result, indent=2, default=str))
        return 0
    except Exception as e:
        logger.error("Command failed", command=args.command, error=str(e))
        return 1
    finally:
        await service.stop()


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    cli()

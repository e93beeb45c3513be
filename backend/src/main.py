from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Callable

import structlog

from backend.src.config import ConfigurationError, Settings
from backend.src.contracts.interfaces import IDocumentStore
from backend.src.differ.differ import CatalogDiffer
from backend.src.notifier.dispatcher import NotificationDispatcher
from backend.src.notifier.registry import ChannelRegistry
from backend.src.notifier.telegram_notifier import TelegramNotifier
from backend.src.products.repository import ProductRepository
from backend.src.scheduler.scheduler import SyncScheduler
from backend.src.scraper.scraper import CatalogFetcher
from backend.src.storage.database import build_engine, build_session_factory, create_tables
from backend.src.storage.document_store import DocumentStore
from backend.src.stores.catalog import DEFAULT_STORES, get_store_by_id
from backend.src.stores.repository import StoreRepository
from backend.src.subscriptions.repository import SubscriptionRepository
from backend.src.sync.orchestrator import SyncOrchestrator

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper()),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="circularity-alert",
        description="Sync second-hand store catalogs and notify subscribers of changes.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sync cycle and exit instead of scheduling.",
    )
    parser.add_argument(
        "-s",
        "--stores",
        default=None,
        help="Comma-separated store ids to sync (overrides STORE_IDS).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Minimum log level (default: INFO).",
    )
    return parser


def _check_store_ids(store_ids: list[str]) -> None:
    unknown = [store_id for store_id in store_ids if get_store_by_id(store_id) is None]
    if not unknown:
        return
    if len(unknown) == len(store_ids):
        raise ConfigurationError(f"No stores found with ids: {','.join(store_ids)}")
    logger.warning("unknown_store_ids", store_ids=unknown)


def build_orchestrator(
    settings: Settings,
    document_store_factory: Callable[[str], IDocumentStore],
    channel: TelegramNotifier,
) -> SyncOrchestrator:
    subscriptions = SubscriptionRepository(document_store_factory("subscriptions"))
    dispatcher = NotificationDispatcher(
        registry=ChannelRegistry(lambda recipient_id: channel),
        subscriptions=subscriptions,
        enabled=settings.notifications_enabled,
        production=settings.is_production,
        send_delay_ms=settings.notification_send_delay_ms,
    )
    return SyncOrchestrator(
        fetcher=CatalogFetcher(settings),
        differ=CatalogDiffer(),
        products=ProductRepository(document_store_factory("products")),
        stores=StoreRepository(
            document_store_factory("stores"),
            document_store_factory("categories"),
            category_delay_ms=settings.category_delay_ms,
        ),
        subscriptions=subscriptions,
        dispatcher=dispatcher,
        store_list=DEFAULT_STORES,
        store_ids=settings.store_id_filter,
        product_delay_ms=settings.product_delay_ms,
        refresh_last_seen=settings.refresh_last_seen,
    )


async def _run(settings: Settings, once: bool) -> None:
    engine = build_engine(settings.database_url)
    await create_tables(engine)
    logger.info("database_tables_ready")

    session_factory = build_session_factory(engine)
    channel = TelegramNotifier(settings)
    orchestrator = build_orchestrator(
        settings,
        lambda collection: DocumentStore(session_factory, collection),
        channel,
    )

    await orchestrator.initialize()
    try:
        if once:
            await orchestrator.run()
        else:
            scheduler = SyncScheduler(orchestrator, settings.sync_interval_minutes)
            scheduler.start()
            try:
                await asyncio.Event().wait()
            finally:
                scheduler.stop()
    finally:
        await orchestrator.cleanup()
        await channel.cleanup()
        await engine.dispose()
        logger.info("shutdown_complete")


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = Settings() if args.stores is None else Settings(store_ids=args.stores)
        settings.validate_for_startup()
        _check_store_ids(settings.store_id_filter)
    except ConfigurationError as exc:
        logger.critical(
            "startup_configuration_error",
            error=str(exc),
            available_store_ids=[s.id for s in DEFAULT_STORES],
        )
        return 1

    logger.info(
        "starting_up",
        environment=settings.environment,
        notifications_enabled=settings.notifications_enabled,
        once=args.once,
    )
    try:
        asyncio.run(_run(settings, args.once))
    except KeyboardInterrupt:
        logger.info("interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())

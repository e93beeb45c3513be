from __future__ import annotations

import asyncio
from datetime import datetime

import structlog

from backend.src.contracts.interfaces import ICatalogFetcher, IProductDiffer, ISubscriptionStore
from backend.src.contracts.models import (
    ChangeSet,
    Store,
    SyncState,
    SyncSummary,
    utc_now,
)
from backend.src.notifier.dispatcher import NotificationDispatcher
from backend.src.products.repository import ProductRepository
from backend.src.stores.catalog import filter_stores
from backend.src.stores.repository import StoreRepository

logger = structlog.get_logger(__name__)


class SyncOrchestrator:
    """Drive fetch -> normalize -> diff -> persist -> notify for each store.

    Stores run strictly one after another. An exception in any phase ends
    that store's run (it is counted as failed) and the next store starts.

    An incomplete ingestion also counts the store as failed. Its additions and
    updates are still applied, but nothing is removed or announced as removed,
    since products on unfetched pages were simply not observed.
    """

    def __init__(
        self,
        fetcher: ICatalogFetcher,
        differ: IProductDiffer,
        products: ProductRepository,
        stores: StoreRepository,
        subscriptions: ISubscriptionStore,
        dispatcher: NotificationDispatcher,
        store_list: list[Store] | None = None,
        store_ids: list[str] | None = None,
        product_delay_ms: int = 0,
        refresh_last_seen: bool = True,
    ) -> None:
        self._fetcher = fetcher
        self._differ = differ
        self._products = products
        self._stores = stores
        self._subscriptions = subscriptions
        self._dispatcher = dispatcher
        self._store_list = list(store_list or [])
        self._store_ids = list(store_ids or [])
        self._product_delay = product_delay_ms / 1000.0
        self._refresh_last_seen = refresh_last_seen

    async def initialize(self) -> None:
        await self._fetcher.initialize()
        logger.info("orchestrator_initialized", stores=len(self._store_list))

    async def cleanup(self) -> None:
        await self._fetcher.cleanup()
        logger.info("orchestrator_cleanup_complete")

    async def run(self) -> SyncSummary:
        """Synchronize the store list, then run one cycle over the selected stores."""
        store_changes = await self._stores.sync_stores(self._store_list)
        stores = filter_stores(self._store_list, self._store_ids)

        summary = await self.run_sync_cycle(stores)
        summary.stores_added = len(store_changes.added)
        summary.stores_updated = len(store_changes.updated)
        summary.stores_removed = len(store_changes.removed)
        return summary

    async def run_sync_cycle(self, stores: list[Store]) -> SyncSummary:
        summary = SyncSummary()
        logger.info("sync_cycle_start", stores=len(stores))

        for store in stores:
            succeeded = await self._sync_store(store, summary)
            if succeeded:
                summary.stores_processed += 1
            else:
                summary.stores_failed += 1

        logger.info("sync_cycle_complete", **summary.model_dump())
        return summary

    async def _sync_store(self, store: Store, summary: SyncSummary) -> bool:
        log = logger.bind(store_id=store.id, store_name=store.name)
        state = SyncState.FETCHING
        log.info("store_sync_start")

        try:
            categories = await self._fetcher.fetch_categories(store)
            fetched = await self._fetcher.fetch_pages(store)

            state = self._advance(log, state, SyncState.NORMALIZING)
            observed_at = utc_now()
            snapshot = self._fetcher.to_snapshot(store, fetched, observed_at=observed_at)
            products = list(snapshot.products)

            state = self._advance(log, state, SyncState.DIFFING)
            persisted = await self._products.get_by_store(store.id)
            change_set = self._differ.diff(store.id, persisted, products, observed_at=observed_at)
            if not snapshot.complete:
                log.warning(
                    "partial_snapshot_removals_skipped",
                    pages=snapshot.pages_fetched,
                    error=snapshot.error,
                    skipped_removals=len(change_set.removed),
                )
                change_set = change_set.model_copy(update={"removed": ()})

            state = self._advance(log, state, SyncState.PERSISTING)
            await self._persist(change_set, observed_at)
            await self._stores.replace_categories(store.id, categories)
            if snapshot.complete:
                await self._stores.record_run(store, len(products), len(categories))

            summary.added += len(change_set.added)
            summary.updated += len(change_set.updated)
            summary.removed += len(change_set.removed)
            summary.total_products += len(products)
            summary.total_categories += len(categories)
            log.info(
                "products_synced",
                added=len(change_set.added),
                updated=len(change_set.updated),
                removed=len(change_set.removed),
                unchanged=len(change_set.unchanged),
            )

            state = self._advance(log, state, SyncState.NOTIFYING)
            if change_set.added or change_set.removed or change_set.price_changes:
                subscriptions = await self._subscriptions.get_subscriptions_for_store(store.id)
                dispatched = await self._dispatcher.dispatch(
                    store.id, store.name, change_set, subscriptions
                )
                summary.notifications_sent += dispatched.sent
                summary.notifications_failed += dispatched.failed

            self._advance(log, state, SyncState.DONE)
        except Exception:
            log.error("store_sync_failed", state=state.value, exc_info=True)
            self._advance(log, state, SyncState.DONE)
            return False

        if not snapshot.complete:
            log.error("store_sync_incomplete", error=snapshot.error)
            return False
        return True

    async def _persist(self, change_set: ChangeSet, observed_at: datetime) -> None:
        writes = 0

        async def pace() -> None:
            nonlocal writes
            if writes and self._product_delay:
                await asyncio.sleep(self._product_delay)
            writes += 1

        for product in change_set.added:
            await pace()
            await self._products.upsert(product)
        for update in change_set.updated:
            await pace()
            await self._products.upsert(update.product)
        if self._refresh_last_seen:
            for product in change_set.unchanged:
                await pace()
                await self._products.touch(product, observed_at)
        for product in change_set.removed:
            await pace()
            await self._products.delete(product.id)

    @staticmethod
    def _advance(log: structlog.stdlib.BoundLogger, current: SyncState, target: SyncState) -> SyncState:
        log.debug("store_sync_state", from_state=current.value, to_state=target.value)
        return target

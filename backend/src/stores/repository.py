from __future__ import annotations

import asyncio

import structlog

from backend.src.contracts.interfaces import IDocumentStore
from backend.src.contracts.models import (
    Category,
    CategoryRecord,
    Store,
    StoreRecord,
    StoreSyncResult,
    utc_now,
)

logger = structlog.get_logger(__name__)


class StoreRepository:
    """Stores and their categories.

    Stores are never deleted: a store that disappears from the source list is
    reported as removed but its document stays for historical data.
    """

    def __init__(
        self,
        stores: IDocumentStore,
        categories: IDocumentStore,
        category_delay_ms: int = 0,
    ) -> None:
        self._stores = stores
        self._categories = categories
        self._category_delay = category_delay_ms / 1000.0

    async def get_all(self) -> list[StoreRecord]:
        return [StoreRecord.model_validate(doc) for doc in await self._stores.get_all()]

    async def sync_stores(self, stores: list[Store]) -> StoreSyncResult:
        existing = {record.id: record for record in await self.get_all()}
        incoming_ids = {store.id for store in stores}
        result = StoreSyncResult()

        for store in stores:
            current = existing.get(store.id)
            if current is None:
                await self._save_store(StoreRecord(**store.model_dump()))
                result.added.append(store)
                logger.info("store_added", store_id=store.id, name=store.name, city=store.city)
            elif current.name != store.name:
                record = current.model_copy(
                    update={**store.model_dump(), "last_sync": utc_now()}
                )
                await self._save_store(record)
                result.updated.append(store)
                logger.info("store_renamed", store_id=store.id, old_name=current.name, name=store.name)

        for store_id, record in existing.items():
            if store_id not in incoming_ids:
                result.removed.append(record)
                logger.warning("store_removed", store_id=store_id, name=record.name)

        logger.info(
            "stores_synced",
            added=len(result.added),
            updated=len(result.updated),
            removed=len(result.removed),
        )
        return result

    async def record_run(self, store: Store, products_count: int, categories_count: int) -> None:
        await self._save_store(
            StoreRecord(
                **store.model_dump(),
                last_sync=utc_now(),
                products_count=products_count,
                categories_count=categories_count,
            )
        )

    async def replace_categories(self, store_id: str, categories: list[Category]) -> None:
        for doc in await self._categories.query("store_id", "==", store_id):
            await self._categories.delete(f"{store_id}-{doc['id']}")

        for index, category in enumerate(categories):
            if index and self._category_delay:
                await asyncio.sleep(self._category_delay)
            record = CategoryRecord(**category.model_dump(), store_id=store_id)
            await self._categories.save(record.model_dump(mode="json"), f"{store_id}-{category.id}")

    async def get_categories(self, store_id: str) -> list[CategoryRecord]:
        docs = await self._categories.query("store_id", "==", store_id)
        return [CategoryRecord.model_validate(doc) for doc in docs]

    async def _save_store(self, record: StoreRecord) -> None:
        await self._stores.save(record.model_dump(mode="json"), record.id)

from __future__ import annotations

from datetime import datetime

from backend.src.contracts.interfaces import IDocumentStore
from backend.src.contracts.models import Product


class ProductRepository:
    def __init__(self, store: IDocumentStore) -> None:
        self._store = store

    async def get_by_store(self, store_id: str) -> list[Product]:
        docs = await self._store.query("store_id", "==", store_id)
        return [Product.model_validate(doc) for doc in docs]

    async def upsert(self, product: Product) -> None:
        await self._store.save(product.model_dump(mode="json"), product.id)

    async def touch(self, product: Product, seen_at: datetime) -> None:
        await self.upsert(product.model_copy(update={"last_seen": seen_at}))

    async def delete(self, product_id: str) -> None:
        await self._store.delete(product_id)

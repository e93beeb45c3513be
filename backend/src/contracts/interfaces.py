from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from backend.src.contracts.models import (
    Category,
    ChangeSet,
    ChannelMessage,
    DeliveryResult,
    Product,
    Snapshot,
    Store,
    Subscription,
)

if TYPE_CHECKING:
    from backend.src.scraper.scraper import PageFetch


class ICatalogFetcher(Protocol):
    async def initialize(self) -> None: ...

    async def fetch_pages(self, store: Store) -> PageFetch: ...

    def to_snapshot(
        self, store: Store, fetched: PageFetch, observed_at: datetime | None = None
    ) -> Snapshot: ...

    async def fetch_catalog(
        self, store: Store, observed_at: datetime | None = None
    ) -> Snapshot: ...

    async def fetch_categories(self, store: Store) -> list[Category]: ...

    async def cleanup(self) -> None: ...


class IProductDiffer(Protocol):
    def diff(
        self,
        store_id: str,
        persisted: list[Product],
        snapshot: list[Product],
        observed_at: datetime | None = None,
    ) -> ChangeSet: ...


class IDocumentStore(Protocol):
    async def save(self, record: dict[str, Any], doc_id: str) -> None: ...

    async def get(self, doc_id: str) -> dict[str, Any] | None: ...

    async def query(self, field: str, op: str, value: Any) -> list[dict[str, Any]]: ...

    async def get_all(self) -> list[dict[str, Any]]: ...

    async def delete(self, doc_id: str) -> None: ...


class ISubscriptionStore(Protocol):
    async def get_subscriptions_for_store(self, store_id: str) -> list[Subscription]: ...

    async def deactivate(self, recipient_id: str) -> None: ...


class IChannelClient(Protocol):
    async def send(self, recipient_id: str, message: ChannelMessage) -> DeliveryResult: ...


class ISyncJob(Protocol):
    async def initialize(self) -> None: ...

    async def run(self) -> Any: ...

    async def cleanup(self) -> None: ...

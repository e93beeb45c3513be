from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


# ── Enums ──────────────────────────────────────────────────────────────────────


class Availability(str, enum.Enum):
    AVAILABLE = "available"
    SOLD = "sold"
    RESERVED = "reserved"


class ChangeKind(str, enum.Enum):
    ADDED = "added"
    REMOVED = "removed"
    PRICE_CHANGED = "price_changed"


class DeliveryStatus(str, enum.Enum):
    OK = "ok"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


class SyncState(str, enum.Enum):
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    DIFFING = "diffing"
    PERSISTING = "persisting"
    NOTIFYING = "notifying"
    DONE = "done"


# ── Catalog source payloads ───────────────────────────────────────────────────


class RawOffer(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: int | str | None = None
    offer_uuid: str = Field(min_length=1)
    offer_number: str | None = None
    description: str | None = None
    additional_info: str | None = None
    price: float
    product_condition_code: str | None = None
    is_in_box: bool = False
    reason_discount: str | None = None


class RawMedia(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str
    type: str | None = None


class RawCatalogItem(BaseModel):
    """One grouped catalog entry; offers are validated one by one as RawOffer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    article_numbers: list[str] = Field(default_factory=list)
    title: str = Field(min_length=1)
    description: str | None = None
    currency: str = "EUR"
    hero_image: str | None = None
    media: list[RawMedia] | None = None
    original_price: float | None = None
    offers: list[Any] = Field(min_length=1)


class RawCategory(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str
    name: str
    category_code: str = ""


class CatalogPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: list[Any] | None = None
    total_pages: int | None = Field(default=None, alias="totalPages")
    total_elements: int | None = Field(default=None, alias="totalElements")
    last: bool | None = None


# ── Domain schemas ────────────────────────────────────────────────────────────


class Store(BaseModel):
    id: str
    name: str
    city: str = ""
    region: str = ""
    country: str = "IT"


class StoreRecord(Store):
    last_sync: datetime = Field(default_factory=utc_now)
    products_count: int = 0
    categories_count: int = 0


class Category(BaseModel):
    id: str
    name: str
    description: str = ""
    image_url: str = ""
    product_count: int = 0


class CategoryRecord(Category):
    store_id: str
    last_sync: datetime = Field(default_factory=utc_now)


class Price(BaseModel):
    current: float
    original: float | None = None
    currency: str = "EUR"
    discount: int | None = None


class Product(BaseModel):
    id: str
    offer_id: str
    store_id: str
    store_name: str = ""
    article_numbers: list[str] = Field(default_factory=list)
    name: str
    description: str = ""
    price: Price
    condition: str = ""
    images: list[str] = Field(default_factory=list)
    availability: Availability = Availability.AVAILABLE
    url: str = ""
    is_in_box: bool = False
    reason_discount: str = ""
    additional_info: str = ""
    category: str = ""
    category_id: str = ""
    first_seen: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)


class Snapshot(BaseModel):
    """Products observed for one store in one ingestion run."""

    model_config = ConfigDict(frozen=True)

    store_id: str
    products: tuple[Product, ...] = ()
    pages_fetched: int = 0
    complete: bool = True
    error: str | None = None


class ProductUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    product: Product
    previous: Product
    changed_fields: tuple[str, ...]
    price_changed: bool = False


class ChangeSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    store_id: str
    added: tuple[Product, ...] = ()
    updated: tuple[ProductUpdate, ...] = ()
    removed: tuple[Product, ...] = ()
    unchanged: tuple[Product, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.updated or self.removed)

    @property
    def price_changes(self) -> tuple[ProductUpdate, ...]:
        return tuple(u for u in self.updated if u.price_changed)


class Subscription(BaseModel):
    recipient_id: str
    subscribed_store_ids: list[str] = Field(default_factory=list)
    notify_on_new_products: bool = True
    notify_on_removed_products: bool = True
    notify_on_price_changes: bool = False
    is_active: bool = True
    max_price: float | None = None
    min_discount: int | None = None
    updated_at: datetime = Field(default_factory=utc_now)


class NotificationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    store_id: str
    store_name: str
    product: Product
    previous: Product | None = None


class ChannelMessage(BaseModel):
    title: str
    body: str
    photo_url: str | None = None


class DeliveryResult(BaseModel):
    status: DeliveryStatus
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.OK


class DispatchResult(BaseModel):
    sent: int = 0
    failed: int = 0
    deactivated: list[str] = Field(default_factory=list)
    previewed: int = 0


class StoreSyncResult(BaseModel):
    added: list[Store] = Field(default_factory=list)
    updated: list[Store] = Field(default_factory=list)
    removed: list[StoreRecord] = Field(default_factory=list)


class SyncSummary(BaseModel):
    added: int = 0
    updated: int = 0
    removed: int = 0
    total_products: int = 0
    total_categories: int = 0
    stores_processed: int = 0
    stores_failed: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    stores_added: int = 0
    stores_updated: int = 0
    stores_removed: int = 0


# ── SQLAlchemy ORM ─────────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    pass


class DocumentRow(Base):
    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(100), primary_key=True)
    id: Mapped[str] = mapped_column(String(300), primary_key=True)
    data: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_documents_collection", "collection"),
    )

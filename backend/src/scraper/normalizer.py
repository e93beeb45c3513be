from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from backend.src.contracts.models import (
    Availability,
    Price,
    Product,
    RawCatalogItem,
    RawOffer,
    Store,
    utc_now,
)

logger = structlog.get_logger(__name__)


def store_slug(store_name: str) -> str:
    """Build the URL slug of a store, e.g. "IKEA Milano Corsico" -> "milano-corsico"."""
    slug = re.sub(r"^ikea\s+", "", store_name.strip().lower())
    slug = re.sub(r"\s+", "-", slug)
    decomposed = unicodedata.normalize("NFD", slug)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def compute_discount(original: float | None, current: float | None) -> int | None:
    if not original or not current:
        return None
    return round((original - current) / original * 100)


def product_id(store_id: str, offer_id: str) -> str:
    return f"{store_id}-{offer_id}"


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )


class SnapshotNormalizer:
    """Turn raw catalog items into Products, one per offer.

    Malformed items and malformed offers are skipped with a warning; a bad
    offer never drops its valid siblings. Normalization never raises for bad
    input.
    """

    def __init__(self, site_url: str, market_path: str) -> None:
        self._site_url = site_url.rstrip("/")
        self._market_path = market_path.strip("/")

    def normalize(
        self,
        raw_page: list[Any],
        store: Store,
        observed_at: datetime | None = None,
    ) -> list[Product]:
        now = observed_at or utc_now()
        slug = store_slug(store.name)
        products: list[Product] = []

        for position, raw in enumerate(raw_page):
            item = self._parse_item(raw, store, position)
            if item is None:
                continue
            images = self._images(item)
            for offer_position, raw_offer in enumerate(item.offers):
                offer = self._parse_offer(raw_offer, store, position, offer_position)
                if offer is None:
                    continue
                products.append(self._to_product(item, offer, store, slug, images, now))

        return products

    def _parse_item(self, raw: Any, store: Store, position: int) -> RawCatalogItem | None:
        if not isinstance(raw, dict):
            logger.warning(
                "catalog_item_skipped",
                store_id=store.id,
                position=position,
                reason="item is missing",
            )
            return None
        try:
            return RawCatalogItem.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "catalog_item_skipped",
                store_id=store.id,
                position=position,
                title=raw.get("title"),
                reason=_describe(exc),
            )
            return None

    @staticmethod
    def _parse_offer(
        raw: Any, store: Store, position: int, offer_position: int
    ) -> RawOffer | None:
        try:
            return RawOffer.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "catalog_offer_skipped",
                store_id=store.id,
                position=position,
                offer_position=offer_position,
                reason=_describe(exc),
            )
            return None

    @staticmethod
    def _images(item: RawCatalogItem) -> list[str]:
        if item.media:
            return [m.url for m in item.media if m.url]
        if item.hero_image:
            return [item.hero_image]
        return []

    def _to_product(
        self,
        item: RawCatalogItem,
        offer: RawOffer,
        store: Store,
        slug: str,
        images: list[str],
        now: datetime,
    ) -> Product:
        offer_ref = offer.id if offer.id is not None else offer.offer_uuid
        return Product(
            id=product_id(store.id, offer.offer_uuid),
            offer_id=offer.offer_uuid,
            store_id=store.id,
            store_name=store.name,
            article_numbers=list(item.article_numbers),
            name=item.title,
            description=item.description or offer.description or "",
            price=Price(
                current=offer.price,
                original=item.original_price,
                currency=item.currency,
                discount=compute_discount(item.original_price, offer.price),
            ),
            condition=offer.product_condition_code or "",
            images=list(images),
            availability=Availability.AVAILABLE,
            url=f"{self._site_url}/{self._market_path}/circular/second-hand/#/{slug}/{offer_ref}",
            is_in_box=offer.is_in_box,
            reason_discount=offer.reason_discount or "",
            additional_info=offer.additional_info or "",
            first_seen=now,
            last_seen=now,
        )

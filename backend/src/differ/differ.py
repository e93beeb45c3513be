from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable

import structlog

from backend.src.contracts.models import ChangeSet, Product, ProductUpdate, utc_now

logger = structlog.get_logger(__name__)

_PRICE_FIELDS = frozenset({"price.current", "price.original"})

# Fields that make a re-observed product count as updated. Anything else
# (description, timestamps, box info...) is refreshed only on an update.
_COMPARED_FIELDS: tuple[tuple[str, Callable[[Product], Any]], ...] = (
    ("name", lambda p: p.name),
    ("price.current", lambda p: p.price.current),
    ("price.original", lambda p: p.price.original),
    ("availability", lambda p: p.availability),
    ("condition", lambda p: p.condition or ""),
    ("images", lambda p: json.dumps(p.images or [])),
)


def changed_fields(previous: Product, current: Product) -> tuple[str, ...]:
    return tuple(
        name for name, read in _COMPARED_FIELDS if read(previous) != read(current)
    )


class CatalogDiffer:
    """Compare a store's persisted products with a fresh snapshot.

    Products are matched by their compound id (``storeId-offerId``):
    - added: in the snapshot, not persisted
    - updated: in both, and a compared field differs
    - removed: persisted, absent from the snapshot
    - unchanged: in both with no compared difference (not a change)
    """

    def diff(
        self,
        store_id: str,
        persisted: list[Product],
        snapshot: list[Product],
        observed_at: datetime | None = None,
    ) -> ChangeSet:
        log = logger.bind(store_id=store_id)
        seen_at = observed_at or utc_now()

        persisted_by_id: dict[str, Product] = {}
        for product in persisted:
            if product.store_id != store_id:
                log.warning("diff_foreign_product_ignored", product_id=product.id)
                continue
            persisted_by_id[product.id] = product

        current_by_id: dict[str, Product] = {}
        for product in snapshot:
            if product.store_id != store_id:
                log.warning("diff_foreign_product_ignored", product_id=product.id)
                continue
            if product.id in current_by_id:
                log.warning("duplicate_snapshot_product", product_id=product.id)
                continue
            current_by_id[product.id] = product

        added: list[Product] = []
        updated: list[ProductUpdate] = []
        unchanged: list[Product] = []

        for product_id, current in current_by_id.items():
            previous = persisted_by_id.get(product_id)

            if previous is None:
                log.info(
                    "new_product_detected",
                    product_id=product_id,
                    name=current.name,
                    price=current.price.current,
                )
                added.append(current)
                continue

            fields = changed_fields(previous, current)
            if not fields:
                unchanged.append(previous.model_copy(update={"last_seen": seen_at}))
                continue

            price_changed = bool(_PRICE_FIELDS.intersection(fields))
            if price_changed:
                log.info(
                    "price_change_detected",
                    product_id=product_id,
                    name=current.name,
                    old_price=previous.price.current,
                    new_price=current.price.current,
                )
            updated.append(
                ProductUpdate(
                    product=current.model_copy(
                        update={"first_seen": previous.first_seen, "last_seen": seen_at}
                    ),
                    previous=previous,
                    changed_fields=fields,
                    price_changed=price_changed,
                )
            )

        removed = [
            product
            for product_id, product in persisted_by_id.items()
            if product_id not in current_by_id
        ]
        for product in removed:
            log.info("product_removed_detected", product_id=product.id, name=product.name)

        log.info(
            "diff_complete",
            persisted_count=len(persisted_by_id),
            snapshot_count=len(current_by_id),
            added=len(added),
            updated=len(updated),
            removed=len(removed),
            unchanged=len(unchanged),
        )

        return ChangeSet(
            store_id=store_id,
            added=tuple(added),
            updated=tuple(updated),
            removed=tuple(removed),
            unchanged=tuple(unchanged),
        )

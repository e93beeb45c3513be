from __future__ import annotations

import structlog

from backend.src.contracts.interfaces import IDocumentStore
from backend.src.contracts.models import Subscription, utc_now

logger = structlog.get_logger(__name__)


class SubscriptionRepository:
    def __init__(self, store: IDocumentStore) -> None:
        self._store = store

    async def get(self, recipient_id: str) -> Subscription | None:
        doc = await self._store.get(recipient_id)
        return Subscription.model_validate(doc) if doc is not None else None

    async def save(self, subscription: Subscription) -> Subscription:
        await self._store.save(subscription.model_dump(mode="json"), subscription.recipient_id)
        return subscription

    async def get_subscriptions_for_store(self, store_id: str) -> list[Subscription]:
        docs = await self._store.query("subscribed_store_ids", "array-contains", store_id)
        subscriptions = [Subscription.model_validate(doc) for doc in docs]
        return [s for s in subscriptions if s.is_active]

    async def deactivate(self, recipient_id: str) -> None:
        subscription = await self.get(recipient_id)
        if subscription is None:
            logger.warning("deactivate_unknown_recipient", recipient_id=recipient_id)
            return
        subscription.is_active = False
        subscription.updated_at = utc_now()
        await self.save(subscription)
        logger.info("recipient_deactivated", recipient_id=recipient_id)

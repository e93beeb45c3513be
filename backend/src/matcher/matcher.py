from __future__ import annotations

import structlog

from backend.src.contracts.models import ChangeKind, NotificationEvent, Subscription

logger = structlog.get_logger(__name__)


def _wants_kind(subscription: Subscription, kind: ChangeKind) -> bool:
    if kind == ChangeKind.ADDED:
        return subscription.notify_on_new_products
    if kind == ChangeKind.REMOVED:
        return subscription.notify_on_removed_products
    if kind == ChangeKind.PRICE_CHANGED:
        return subscription.notify_on_price_changes
    return False


def _within_limits(subscription: Subscription, event: NotificationEvent) -> bool:
    """Apply the optional price ceiling and minimum discount.

    Limits only narrow offers a recipient could still buy, so removals always
    pass.
    """
    if event.kind == ChangeKind.REMOVED:
        return True

    price = event.product.price
    if subscription.max_price is not None and price.current > subscription.max_price:
        return False
    if subscription.min_discount is not None and (price.discount or 0) < subscription.min_discount:
        return False
    return True


class PreferenceMatcher:
    """Select the subscriptions that should receive a notification event.

    Matching rules:
    - the subscription is active and follows the event's store
    - the preference flag for the event kind is on
    - max_price / min_discount, when set, hold for added and price-changed events
    """

    def match(
        self,
        event: NotificationEvent,
        subscriptions: list[Subscription],
    ) -> list[Subscription]:
        matched: list[Subscription] = []

        for subscription in subscriptions:
            if not subscription.is_active:
                continue
            if event.store_id not in subscription.subscribed_store_ids:
                continue
            if not _wants_kind(subscription, event.kind):
                continue
            if not _within_limits(subscription, event):
                logger.debug(
                    "skipped_outside_limits",
                    recipient_id=subscription.recipient_id,
                    product_id=event.product.id,
                    price=event.product.price.current,
                    max_price=subscription.max_price,
                    min_discount=subscription.min_discount,
                )
                continue
            matched.append(subscription)

        return matched

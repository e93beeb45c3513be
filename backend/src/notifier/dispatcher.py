from __future__ import annotations

import asyncio
from collections import Counter

import structlog

from backend.src.contracts.interfaces import ISubscriptionStore
from backend.src.contracts.models import (
    ChangeKind,
    ChangeSet,
    DeliveryStatus,
    DispatchResult,
    NotificationEvent,
    Subscription,
)
from backend.src.matcher.matcher import PreferenceMatcher
from backend.src.notifier.messages import render_message
from backend.src.notifier.registry import ChannelRegistry

logger = structlog.get_logger(__name__)

_PREVIEWS_PER_KIND = 2


def build_events(store_id: str, store_name: str, change_set: ChangeSet) -> list[NotificationEvent]:
    """Turn a change-set into notification events: added, removed, then price changes."""
    events = [
        NotificationEvent(
            kind=ChangeKind.ADDED, store_id=store_id, store_name=store_name, product=p
        )
        for p in change_set.added
    ]
    events.extend(
        NotificationEvent(
            kind=ChangeKind.REMOVED, store_id=store_id, store_name=store_name, product=p
        )
        for p in change_set.removed
    )
    events.extend(
        NotificationEvent(
            kind=ChangeKind.PRICE_CHANGED,
            store_id=store_id,
            store_name=store_name,
            product=u.product,
            previous=u.previous,
        )
        for u in change_set.price_changes
    )
    return events


class NotificationDispatcher:
    """Send change notifications to subscribed recipients, one at a time.

    - permanent failure: the recipient is deactivated and skipped for the
      rest of the run
    - transient failure: logged and dropped, no retry
    - outside production, messages are previewed in the log instead of sent
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        subscriptions: ISubscriptionStore,
        matcher: PreferenceMatcher | None = None,
        enabled: bool = True,
        production: bool = True,
        send_delay_ms: int = 100,
    ) -> None:
        self._registry = registry
        self._subscriptions = subscriptions
        self._matcher = matcher or PreferenceMatcher()
        self._enabled = enabled
        self._production = production
        self._send_delay = send_delay_ms / 1000.0

    async def dispatch(
        self,
        store_id: str,
        store_name: str,
        change_set: ChangeSet,
        subscriptions: list[Subscription],
    ) -> DispatchResult:
        log = logger.bind(store_id=store_id)
        result = DispatchResult()

        if not self._enabled:
            log.info(
                "notifications_disabled",
                changes=len(change_set.added)
                + len(change_set.removed)
                + len(change_set.price_changes),
            )
            return result

        events = build_events(store_id, store_name, change_set)
        if not events:
            return result

        log.info(
            "dispatch_start",
            events=len(events),
            subscriptions=len(subscriptions),
        )

        if not self._production:
            result.previewed = self._preview(events, subscriptions)
            return result

        deactivated: set[str] = set()
        for event in events:
            recipients = self._matcher.match(event, subscriptions)
            if not recipients:
                continue
            message = render_message(event)

            for subscription in recipients:
                recipient_id = subscription.recipient_id
                if recipient_id in deactivated:
                    continue

                client = self._registry.get(recipient_id)
                try:
                    delivery = await client.send(recipient_id, message)
                except Exception as exc:  # noqa: BLE001
                    log.error(
                        "notify_channel_error",
                        recipient_id=recipient_id,
                        product_id=event.product.id,
                        error=str(exc),
                    )
                    result.failed += 1
                else:
                    if delivery.status == DeliveryStatus.OK:
                        result.sent += 1
                    elif delivery.status == DeliveryStatus.PERMANENT_FAILURE:
                        result.failed += 1
                        deactivated.add(recipient_id)
                        result.deactivated.append(recipient_id)
                        self._registry.forget(recipient_id)
                        log.warning(
                            "recipient_unreachable",
                            recipient_id=recipient_id,
                            error=delivery.error,
                        )
                        await self._subscriptions.deactivate(recipient_id)
                    else:
                        result.failed += 1
                        log.warning(
                            "notify_transient_failure",
                            recipient_id=recipient_id,
                            product_id=event.product.id,
                            error=delivery.error,
                        )

                if self._send_delay:
                    await asyncio.sleep(self._send_delay)

        log.info(
            "dispatch_complete",
            sent=result.sent,
            failed=result.failed,
            deactivated=len(result.deactivated),
        )
        return result

    def _preview(self, events: list[NotificationEvent], subscriptions: list[Subscription]) -> int:
        shown: Counter[ChangeKind] = Counter()
        previewed = 0
        for event in events:
            if shown[event.kind] >= _PREVIEWS_PER_KIND:
                continue
            shown[event.kind] += 1
            recipients = self._matcher.match(event, subscriptions)
            previewed += 1
            message = render_message(event)
            logger.info(
                "notification_preview",
                kind=event.kind.value,
                store_id=event.store_id,
                title=message.title,
                body=message.body,
                photo=message.photo_url,
                recipients=len(recipients),
            )
        return previewed

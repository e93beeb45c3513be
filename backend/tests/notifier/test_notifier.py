from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from structlog.testing import capture_logs

from backend.src.config import Settings
from backend.src.contracts.models import (
    ChangeKind,
    ChangeSet,
    ChannelMessage,
    DeliveryResult,
    DeliveryStatus,
    NotificationEvent,
    Price,
    Product,
    ProductUpdate,
    Subscription,
)
from backend.src.notifier.dispatcher import NotificationDispatcher, build_events
from backend.src.notifier.messages import (
    format_amount,
    render_added,
    render_message,
    render_price_changed,
    render_removed,
)
from backend.src.notifier.registry import ChannelRegistry
from backend.src.notifier.telegram_notifier import (
    TelegramNotifier,
    build_telegram_text,
    classify_failure,
)

STORE_ID = "356"
STORE_NAME = "IKEA Milano San Giuliano"
TELEGRAM_API = "https://telegram.example"


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        telegram_bot_token="123:abc",
        telegram_api_url=TELEGRAM_API,
    )


def _make_product(
    offer_id: str = "uuid-1",
    name: str = "KALLAX Shelf unit",
    price: float = 49.0,
    original: float | None = 79.0,
    discount: int | None = 38,
    images: list[str] | None = None,
) -> Product:
    return Product(
        id=f"{STORE_ID}-{offer_id}",
        offer_id=offer_id,
        store_id=STORE_ID,
        store_name=STORE_NAME,
        name=name,
        price=Price(current=price, original=original, discount=discount),
        condition="good",
        images=images if images is not None else ["https://img.example/kallax.jpg"],
        url=f"https://www.ikea.com/it/it/circular/second-hand/#/milano-san-giuliano/{offer_id}",
        first_seen=datetime(2026, 1, 1, tzinfo=timezone.utc),
        last_seen=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


def _make_subscription(recipient_id: str, **overrides: object) -> Subscription:
    return Subscription(
        recipient_id=recipient_id,
        subscribed_store_ids=[STORE_ID],
        **overrides,
    )


def _price_update(old: float, new: float) -> ProductUpdate:
    previous = _make_product("uuid-p", price=old)
    return ProductUpdate(
        product=_make_product("uuid-p", price=new),
        previous=previous,
        changed_fields=("price.current",),
        price_changed=True,
    )


class _FakeChannel:
    """Channel client answering from a per-recipient script."""

    def __init__(self, outcomes: dict[str, DeliveryStatus] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.sent: list[tuple[str, ChannelMessage]] = []

    async def send(self, recipient_id: str, message: ChannelMessage) -> DeliveryResult:
        self.sent.append((recipient_id, message))
        status = self.outcomes.get(recipient_id, DeliveryStatus.OK)
        return DeliveryResult(status=status, error=None if status == DeliveryStatus.OK else "nope")


def _make_dispatcher(
    channel: _FakeChannel,
    subscriptions: AsyncMock | None = None,
    **kwargs: object,
) -> tuple[NotificationDispatcher, ChannelRegistry, AsyncMock]:
    store = subscriptions or AsyncMock()
    registry = ChannelRegistry(lambda recipient_id: channel)
    options = {"production": True, "send_delay_ms": 0, **kwargs}
    return NotificationDispatcher(registry, store, **options), registry, store


# ── Message rendering ─────────────────────────────────────────────────────────


class TestMessages:
    def test_format_amount(self) -> None:
        assert format_amount(49.0, "EUR") == "€49.00"
        assert format_amount(12.5, "SEK") == "12.50 SEK"

    def test_render_added(self) -> None:
        message = render_added(STORE_NAME, _make_product(name="BILLY <white>"))

        assert message.title == f"🆕 New product - {STORE_NAME}"
        assert "BILLY &lt;white&gt;" in message.body
        assert "€49.00" in message.body
        assert "(-38%)" in message.body
        assert message.photo_url == "https://img.example/kallax.jpg"

    def test_render_removed_without_images(self) -> None:
        message = render_removed(STORE_NAME, _make_product(images=[]))

        assert message.title.startswith("🔴 Sold or removed")
        assert message.photo_url is None

    def test_render_price_drop(self) -> None:
        update = _price_update(old=50.0, new=40.0)

        message = render_price_changed(STORE_NAME, update.product, update.previous)

        assert message.title == f"📉 Price change - {STORE_NAME}"
        assert "€50.00" in message.body
        assert "€40.00" in message.body
        assert "(-20%)" in message.body

    def test_render_price_increase(self) -> None:
        update = _price_update(old=40.0, new=50.0)

        message = render_price_changed(STORE_NAME, update.product, update.previous)

        assert message.title.startswith("📈")
        assert "(+25%)" in message.body

    def test_render_message_dispatches_on_kind(self) -> None:
        event = NotificationEvent(
            kind=ChangeKind.REMOVED,
            store_id=STORE_ID,
            store_name=STORE_NAME,
            product=_make_product(),
        )

        assert render_message(event).title.startswith("🔴")


# ── Telegram channel ──────────────────────────────────────────────────────────


def _telegram_response(status_code: int, body: dict) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        json=body,
        request=httpx.Request("POST", TELEGRAM_API),
    )


class TestTelegramFormatting:
    def test_title_is_escaped_and_bold(self) -> None:
        text, parse_mode = build_telegram_text(ChannelMessage(title="A & B", body="body"))

        assert text == "<b>A &amp; B</b>\n\nbody"
        assert parse_mode == "HTML"

    def test_long_text_is_truncated_as_plain_text(self) -> None:
        body = "<b>" + "x" * 5000 + "</b> &amp; more"

        text, parse_mode = build_telegram_text(ChannelMessage(title="A & B", body=body))

        assert parse_mode is None
        assert len(text) == 4096
        assert text.startswith("A & B\n\nxxx")
        assert text.endswith("…")
        assert "<b>" not in text

    def test_text_at_the_limit_keeps_markup(self) -> None:
        body = "x" * (4096 - len("<b>t</b>\n\n"))

        text, parse_mode = build_telegram_text(ChannelMessage(title="t", body=body))

        assert parse_mode == "HTML"
        assert len(text) == 4096


class TestClassifyFailure:
    def test_forbidden_is_permanent(self) -> None:
        assert classify_failure(403, "Forbidden: bot was blocked by the user") == (
            DeliveryStatus.PERMANENT_FAILURE
        )

    def test_chat_not_found_is_permanent(self) -> None:
        assert classify_failure(400, "Bad Request: chat not found") == (
            DeliveryStatus.PERMANENT_FAILURE
        )

    def test_other_bad_request_is_transient(self) -> None:
        assert classify_failure(400, "Bad Request: wrong file identifier") == (
            DeliveryStatus.TRANSIENT_FAILURE
        )

    def test_rate_limit_is_transient(self) -> None:
        assert classify_failure(429, "Too Many Requests: retry after 5") == (
            DeliveryStatus.TRANSIENT_FAILURE
        )


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_send_photo_success(self, settings: Settings) -> None:
        notifier = TelegramNotifier(settings)
        message = ChannelMessage(title="t", body="b", photo_url="https://img.example/a.jpg")
        mock_post = AsyncMock(return_value=_telegram_response(200, {"ok": True, "result": {}}))

        with patch.object(httpx.AsyncClient, "post", mock_post):
            result = await notifier.send("1001", message)

        assert result.ok
        url = mock_post.call_args.args[0]
        assert url == f"{TELEGRAM_API}/bot123:abc/sendPhoto"
        payload = mock_post.call_args.kwargs["json"]
        assert payload["chat_id"] == "1001"
        assert payload["photo"] == "https://img.example/a.jpg"
        assert payload["parse_mode"] == "HTML"

    @pytest.mark.asyncio
    async def test_send_text_without_photo(self, settings: Settings) -> None:
        notifier = TelegramNotifier(settings)
        mock_post = AsyncMock(return_value=_telegram_response(200, {"ok": True, "result": {}}))

        with patch.object(httpx.AsyncClient, "post", mock_post):
            result = await notifier.send("1001", ChannelMessage(title="t", body="b"))

        assert result.ok
        assert mock_post.call_args.args[0].endswith("/sendMessage")
        assert mock_post.call_args.kwargs["json"]["text"] == "<b>t</b>\n\nb"

    @pytest.mark.asyncio
    async def test_oversized_message_is_sent_without_parse_mode(
        self, settings: Settings
    ) -> None:
        notifier = TelegramNotifier(settings)
        message = ChannelMessage(
            title="t",
            body="<i>" + "y" * 5000 + "</i>",
            photo_url="https://img.example/a.jpg",
        )
        mock_post = AsyncMock(return_value=_telegram_response(200, {"ok": True, "result": {}}))

        with patch.object(httpx.AsyncClient, "post", mock_post):
            result = await notifier.send("1001", message)

        assert result.ok
        assert mock_post.call_count == 1
        assert mock_post.call_args.args[0].endswith("/sendMessage")
        payload = mock_post.call_args.kwargs["json"]
        assert "parse_mode" not in payload
        assert "<i>" not in payload["text"]
        assert len(payload["text"]) == 4096

    @pytest.mark.asyncio
    async def test_rejected_photo_falls_back_to_text(self, settings: Settings) -> None:
        notifier = TelegramNotifier(settings)
        message = ChannelMessage(title="t", body="b", photo_url="https://img.example/bad.jpg")
        mock_post = AsyncMock(
            side_effect=[
                _telegram_response(
                    400, {"ok": False, "error_code": 400, "description": "Bad Request: wrong type"}
                ),
                _telegram_response(200, {"ok": True, "result": {}}),
            ]
        )

        with patch.object(httpx.AsyncClient, "post", mock_post):
            result = await notifier.send("1001", message)

        assert result.ok
        assert mock_post.call_count == 2
        assert mock_post.call_args_list[1].args[0].endswith("/sendMessage")

    @pytest.mark.asyncio
    async def test_blocked_bot_is_permanent_without_fallback(self, settings: Settings) -> None:
        notifier = TelegramNotifier(settings)
        message = ChannelMessage(title="t", body="b", photo_url="https://img.example/a.jpg")
        mock_post = AsyncMock(
            return_value=_telegram_response(
                403,
                {"ok": False, "error_code": 403, "description": "Forbidden: bot was blocked by the user"},
            )
        )

        with patch.object(httpx.AsyncClient, "post", mock_post):
            result = await notifier.send("1001", message)

        assert result.status == DeliveryStatus.PERMANENT_FAILURE
        assert mock_post.call_count == 1

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, settings: Settings) -> None:
        notifier = TelegramNotifier(settings)
        mock_post = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))

        with patch.object(httpx.AsyncClient, "post", mock_post):
            result = await notifier.send("1001", ChannelMessage(title="t", body="b"))

        assert result.status == DeliveryStatus.TRANSIENT_FAILURE
        assert "ConnectError" in (result.error or "")


# ── Registry ──────────────────────────────────────────────────────────────────


class TestChannelRegistry:
    def test_client_is_created_once_per_recipient(self) -> None:
        created: list[str] = []

        def factory(recipient_id: str) -> _FakeChannel:
            created.append(recipient_id)
            return _FakeChannel()

        registry = ChannelRegistry(factory)
        first = registry.get("1")
        second = registry.get("1")

        assert first is second
        assert created == ["1"]
        assert "1" in registry
        assert len(registry) == 1

    def test_forget_drops_client(self) -> None:
        registry = ChannelRegistry(lambda recipient_id: _FakeChannel())
        registry.get("1")

        registry.forget("1")
        registry.forget("unknown")

        assert "1" not in registry


# ── Dispatcher ────────────────────────────────────────────────────────────────


class TestBuildEvents:
    def test_order_is_added_removed_price_changes(self) -> None:
        non_price_update = ProductUpdate(
            product=_make_product("uuid-n", name="new name"),
            previous=_make_product("uuid-n"),
            changed_fields=("name",),
        )
        change_set = ChangeSet(
            store_id=STORE_ID,
            added=(_make_product("uuid-a"),),
            removed=(_make_product("uuid-r"),),
            updated=(_price_update(10.0, 8.0), non_price_update),
        )

        events = build_events(STORE_ID, STORE_NAME, change_set)

        assert [e.kind for e in events] == [
            ChangeKind.ADDED,
            ChangeKind.REMOVED,
            ChangeKind.PRICE_CHANGED,
        ]
        assert events[2].previous is not None
        assert events[2].previous.price.current == 10.0


class TestNotificationDispatcher:
    @pytest.mark.asyncio
    async def test_sends_to_matching_subscribers(self) -> None:
        channel = _FakeChannel()
        dispatcher, _, _ = _make_dispatcher(channel)
        change_set = ChangeSet(store_id=STORE_ID, added=(_make_product(),))
        subs = [
            _make_subscription("1"),
            _make_subscription("2", notify_on_new_products=False),
        ]

        result = await dispatcher.dispatch(STORE_ID, STORE_NAME, change_set, subs)

        assert result.sent == 1
        assert result.failed == 0
        assert [recipient for recipient, _ in channel.sent] == ["1"]

    @pytest.mark.asyncio
    async def test_price_changes_only_for_opted_in(self) -> None:
        channel = _FakeChannel()
        dispatcher, _, _ = _make_dispatcher(channel)
        change_set = ChangeSet(store_id=STORE_ID, updated=(_price_update(50.0, 40.0),))
        subs = [
            _make_subscription("1"),
            _make_subscription("2", notify_on_price_changes=True),
        ]

        result = await dispatcher.dispatch(STORE_ID, STORE_NAME, change_set, subs)

        assert result.sent == 1
        assert channel.sent[0][0] == "2"
        assert channel.sent[0][1].title.startswith("📉")

    @pytest.mark.asyncio
    async def test_permanent_failure_deactivates_and_skips_recipient(self) -> None:
        channel = _FakeChannel({"1": DeliveryStatus.PERMANENT_FAILURE})
        dispatcher, registry, store = _make_dispatcher(channel)
        change_set = ChangeSet(
            store_id=STORE_ID,
            added=(_make_product("uuid-a"), _make_product("uuid-b")),
        )
        subs = [_make_subscription("1"), _make_subscription("2")]

        result = await dispatcher.dispatch(STORE_ID, STORE_NAME, change_set, subs)

        assert result.deactivated == ["1"]
        assert result.failed == 1
        assert result.sent == 2
        store.deactivate.assert_awaited_once_with("1")
        assert [r for r, _ in channel.sent].count("1") == 1
        assert "1" not in registry

    @pytest.mark.asyncio
    async def test_transient_failure_is_not_retried(self) -> None:
        channel = _FakeChannel({"1": DeliveryStatus.TRANSIENT_FAILURE})
        dispatcher, _, store = _make_dispatcher(channel)
        change_set = ChangeSet(
            store_id=STORE_ID,
            added=(_make_product("uuid-a"), _make_product("uuid-b")),
        )

        result = await dispatcher.dispatch(
            STORE_ID, STORE_NAME, change_set, [_make_subscription("1")]
        )

        assert result.failed == 2
        assert result.sent == 0
        assert result.deactivated == []
        assert len(channel.sent) == 2
        store.deactivate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_channel_exception_counts_as_failure(self) -> None:
        channel = _FakeChannel()
        channel.send = AsyncMock(side_effect=RuntimeError("boom"))  # type: ignore[method-assign]
        dispatcher, _, store = _make_dispatcher(channel)
        change_set = ChangeSet(
            store_id=STORE_ID,
            added=(_make_product("uuid-a"), _make_product("uuid-b")),
        )

        result = await dispatcher.dispatch(
            STORE_ID, STORE_NAME, change_set, [_make_subscription("1")]
        )

        assert result.failed == 2
        assert channel.send.await_count == 2
        store.deactivate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_waits_between_sends(self) -> None:
        channel = _FakeChannel()
        dispatcher, _, _ = _make_dispatcher(channel, send_delay_ms=100)
        change_set = ChangeSet(
            store_id=STORE_ID,
            added=(_make_product("uuid-a"), _make_product("uuid-b")),
        )

        with patch(
            "backend.src.notifier.dispatcher.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            await dispatcher.dispatch(STORE_ID, STORE_NAME, change_set, [_make_subscription("1")])

        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(0.1)

    @pytest.mark.asyncio
    async def test_disabled_sends_nothing(self) -> None:
        channel = _FakeChannel()
        dispatcher, _, _ = _make_dispatcher(channel, enabled=False)
        change_set = ChangeSet(store_id=STORE_ID, added=(_make_product(),))

        result = await dispatcher.dispatch(
            STORE_ID, STORE_NAME, change_set, [_make_subscription("1")]
        )

        assert result.sent == 0
        assert result.previewed == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_disabled_log_counts_price_changes(self) -> None:
        channel = _FakeChannel()
        dispatcher, _, _ = _make_dispatcher(channel, enabled=False)
        change_set = ChangeSet(
            store_id=STORE_ID,
            added=(_make_product("uuid-a"),),
            updated=(_price_update(50.0, 40.0),),
        )

        with capture_logs() as logs:
            await dispatcher.dispatch(STORE_ID, STORE_NAME, change_set, [_make_subscription("1")])

        disabled = [e for e in logs if e["event"] == "notifications_disabled"]
        assert disabled[0]["changes"] == 2
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_preview_outside_production(self) -> None:
        channel = _FakeChannel()
        dispatcher, _, _ = _make_dispatcher(channel, production=False)
        change_set = ChangeSet(
            store_id=STORE_ID,
            added=tuple(_make_product(f"uuid-{i}") for i in range(3)),
            removed=(_make_product("uuid-r"),),
        )

        result = await dispatcher.dispatch(
            STORE_ID, STORE_NAME, change_set, [_make_subscription("1")]
        )

        assert result.previewed == 3
        assert result.sent == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_empty_change_set(self) -> None:
        channel = _FakeChannel()
        dispatcher, _, _ = _make_dispatcher(channel)

        result = await dispatcher.dispatch(
            STORE_ID, STORE_NAME, ChangeSet(store_id=STORE_ID), [_make_subscription("1")]
        )

        assert result.sent == 0
        assert channel.sent == []

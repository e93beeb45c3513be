from __future__ import annotations

import re
from html import escape, unescape
from typing import Any

import httpx
import structlog

from backend.src.config import Settings
from backend.src.contracts.models import ChannelMessage, DeliveryResult, DeliveryStatus

logger = structlog.get_logger(__name__)

# Telegram limits photo captions to 1024 characters and messages to 4096.
_CAPTION_LIMIT = 1024
_MESSAGE_LIMIT = 4096

_TAG = re.compile(r"<[^>]+>")

_PERMANENT_DESCRIPTIONS = (
    "chat not found",
    "user is deactivated",
    "bot was blocked",
    "bot was kicked",
)


def build_telegram_text(message: ChannelMessage) -> tuple[str, str | None]:
    """Render a channel message as Telegram HTML, with its parse mode.

    Text over the message limit loses its markup and is truncated as plain
    text with no parse mode.
    """
    text = f"<b>{escape(message.title)}</b>\n\n{message.body}"
    if len(text) <= _MESSAGE_LIMIT:
        return text, "HTML"
    plain = unescape(_TAG.sub("", text))
    if len(plain) > _MESSAGE_LIMIT:
        plain = plain[: _MESSAGE_LIMIT - 1] + "…"
    return plain, None


def classify_failure(status_code: int, description: str) -> DeliveryStatus:
    """Map a Bot API error to a permanent or transient delivery failure."""
    lowered = description.lower()
    if status_code == 403:
        return DeliveryStatus.PERMANENT_FAILURE
    if status_code == 400 and any(d in lowered for d in _PERMANENT_DESCRIPTIONS):
        return DeliveryStatus.PERMANENT_FAILURE
    return DeliveryStatus.TRANSIENT_FAILURE


class TelegramNotifier:
    """IChannelClient implementation that sends messages via the Telegram Bot API.

    Messages with a photo go through ``sendPhoto`` and fall back to a plain
    ``sendMessage`` when the photo is rejected for a non-permanent reason.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._client: httpx.AsyncClient | None = None

    @property
    def _base_url(self) -> str:
        return f"{self._settings.telegram_api_url.rstrip('/')}/bot{self._settings.telegram_bot_token}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.http_timeout_seconds),
            )
        return self._client

    async def cleanup(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, recipient_id: str, message: ChannelMessage) -> DeliveryResult:
        log = logger.bind(recipient_id=recipient_id, channel="telegram")
        text, parse_mode = build_telegram_text(message)
        formatting = {"parse_mode": parse_mode} if parse_mode else {}

        if message.photo_url and parse_mode and len(text) <= _CAPTION_LIMIT:
            result = await self._call(
                "sendPhoto",
                {
                    "chat_id": recipient_id,
                    "photo": message.photo_url,
                    "caption": text,
                    **formatting,
                },
            )
            if result.status != DeliveryStatus.TRANSIENT_FAILURE:
                log.info("telegram_sent", method="sendPhoto", status=result.status.value)
                return result
            log.warning("telegram_photo_failed_falling_back", error=result.error)

        result = await self._call(
            "sendMessage",
            {
                "chat_id": recipient_id,
                "text": text,
                **formatting,
                "disable_web_page_preview": True,
            },
        )
        if result.ok:
            log.info("telegram_sent", method="sendMessage")
        else:
            log.warning("telegram_send_failed", status=result.status.value, error=result.error)
        return result

    async def _call(self, method: str, payload: dict[str, Any]) -> DeliveryResult:
        try:
            response = await self._get_client().post(f"{self._base_url}/{method}", json=payload)
        except httpx.HTTPError as exc:
            return DeliveryResult(
                status=DeliveryStatus.TRANSIENT_FAILURE,
                error=f"{type(exc).__name__}: {exc}",
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_success and body.get("ok", False):
            return DeliveryResult(status=DeliveryStatus.OK)

        description = str(body.get("description") or response.reason_phrase)
        status_code = int(body.get("error_code") or response.status_code)
        return DeliveryResult(
            status=classify_failure(status_code, description),
            error=f"{status_code}: {description}",
        )

from __future__ import annotations

from typing import Callable

import structlog

from backend.src.contracts.interfaces import IChannelClient

logger = structlog.get_logger(__name__)


class ChannelRegistry:
    """Per-recipient cache of channel clients.

    Owned by a single dispatcher; nothing here is shared between registries.
    The factory decides which channel a recipient is reached through, so
    adding a new channel only needs a new client class and a factory that
    returns it.
    """

    def __init__(self, factory: Callable[[str], IChannelClient]) -> None:
        self._factory = factory
        self._clients: dict[str, IChannelClient] = {}

    def get(self, recipient_id: str) -> IChannelClient:
        client = self._clients.get(recipient_id)
        if client is None:
            client = self._factory(recipient_id)
            self._clients[recipient_id] = client
            logger.debug("channel_registered", recipient_id=recipient_id)
        return client

    def forget(self, recipient_id: str) -> None:
        self._clients.pop(recipient_id, None)

    def __contains__(self, recipient_id: object) -> bool:
        return recipient_id in self._clients

    def __len__(self) -> int:
        return len(self._clients)

from backend.src.notifier.dispatcher import NotificationDispatcher
from backend.src.notifier.registry import ChannelRegistry
from backend.src.notifier.telegram_notifier import TelegramNotifier

__all__ = [
    "ChannelRegistry",
    "NotificationDispatcher",
    "TelegramNotifier",
]

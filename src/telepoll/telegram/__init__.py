"""Telegram Bot API client and update records."""

from .api_models import CallbackQuery, Chat, Message, Update, User
from .client import BotClient, FetchError, HttpBotClient, TelegramRetryAfter

__all__ = [
    "BotClient",
    "CallbackQuery",
    "Chat",
    "FetchError",
    "HttpBotClient",
    "Message",
    "TelegramRetryAfter",
    "Update",
    "User",
]

from __future__ import annotations

from typing import Literal

import msgspec

UpdateKind = Literal[
    "message",
    "edited_message",
    "channel_post",
    "edited_channel_post",
    "callback_query",
]

UPDATE_KINDS: tuple[UpdateKind, ...] = (
    "message",
    "edited_message",
    "channel_post",
    "edited_channel_post",
    "callback_query",
)


class User(msgspec.Struct, kw_only=True):
    id: int
    is_bot: bool = False
    first_name: str | None = None
    username: str | None = None


class Chat(msgspec.Struct, kw_only=True):
    id: int
    type: str = "private"
    title: str | None = None
    username: str | None = None


class Message(msgspec.Struct, kw_only=True):
    message_id: int
    chat: Chat | None = None
    date: int | None = None
    from_: User | None = msgspec.field(default=None, name="from")
    message_thread_id: int | None = None
    text: str | None = None
    caption: str | None = None


class CallbackQuery(msgspec.Struct, kw_only=True):
    id: str
    from_: User | None = msgspec.field(default=None, name="from")
    message: Message | None = None
    data: str | None = None


class Update(msgspec.Struct, kw_only=True):
    update_id: int
    message: Message | None = None
    edited_message: Message | None = None
    channel_post: Message | None = None
    edited_channel_post: Message | None = None
    callback_query: CallbackQuery | None = None

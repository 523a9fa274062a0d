"""Predicates for :class:`telepoll.poller.MiddlewarePoller`."""

from __future__ import annotations

from collections.abc import Iterable

from .poller import UpdateFilter
from .telegram.api_models import UPDATE_KINDS, Message, Update, UpdateKind


def update_kind(update: Update) -> UpdateKind | None:
    for kind in UPDATE_KINDS:
        if getattr(update, kind) is not None:
            return kind
    return None


def _message_of(update: Update) -> Message | None:
    if update.callback_query is not None:
        return update.callback_query.message
    for kind in ("message", "edited_message", "channel_post", "edited_channel_post"):
        msg = getattr(update, kind)
        if msg is not None:
            return msg
    return None


def chat_id_of(update: Update) -> int | None:
    msg = _message_of(update)
    if msg is None or msg.chat is None:
        return None
    return msg.chat.id


def chat_filter(chat_ids: Iterable[int]) -> UpdateFilter:
    allowed = frozenset(chat_ids)

    def _filter(update: Update) -> bool:
        return chat_id_of(update) in allowed

    return _filter


def kind_filter(kinds: Iterable[str]) -> UpdateFilter:
    allowed = frozenset(kinds)
    unknown = allowed.difference(UPDATE_KINDS)
    if unknown:
        raise ValueError(f"unknown update kinds: {', '.join(sorted(unknown))}")

    def _filter(update: Update) -> bool:
        return update_kind(update) in allowed

    return _filter


def all_of(*filters: UpdateFilter) -> UpdateFilter:
    def _filter(update: Update) -> bool:
        return all(f(update) for f in filters)

    return _filter


def any_of(*filters: UpdateFilter) -> UpdateFilter:
    def _filter(update: Update) -> bool:
        return any(f(update) for f in filters)

    return _filter


def negate(f: UpdateFilter) -> UpdateFilter:
    def _filter(update: Update) -> bool:
        return not f(update)

    return _filter

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream

from .filters import all_of, chat_filter, kind_filter
from .logging import get_logger
from .poller import (
    LongPoller,
    Poller,
    PollingError,
    UpdateFilter,
    middleware,
)
from .settings import MiddlewareSettings, TelepollSettings
from .telegram.api_models import Update
from .telegram.client import BotClient, FetchError

logger = get_logger(__name__)


@asynccontextmanager
async def open_update_stream(
    bot: BotClient,
    poller: Poller,
    *,
    buffer_size: int = 100,
    stop: anyio.Event | None = None,
) -> AsyncIterator[MemoryObjectReceiveStream[Update]]:
    """Run ``poller`` in the background and yield the stream it feeds.

    Leaving the block stops and cancels the poller. If the poller gives up,
    the stream ends and its :class:`PollingError` is raised on exit.
    """
    if stop is None:
        stop = anyio.Event()
    send, receive = anyio.create_memory_object_stream(buffer_size)
    failure: PollingError | None = None

    async with anyio.create_task_group() as tg:

        async def run() -> None:
            nonlocal failure
            try:
                await poller.poll(bot, send, stop)
            except PollingError as exc:
                failure = exc
            finally:
                send.close()

        tg.start_soon(run)
        logger.debug("driver.started", poller=type(poller).__name__)
        try:
            with receive:
                yield receive
        finally:
            stop.set()
            tg.cancel_scope.cancel()
    logger.debug("driver.stopped", failed=failure is not None)

    if failure is not None:
        raise failure


def _layer_filter(layer: MiddlewareSettings) -> UpdateFilter:
    filters: list[UpdateFilter] = []
    if layer.chat_ids is not None:
        filters.append(chat_filter(layer.chat_ids))
    if layer.kinds is not None:
        filters.append(kind_filter(layer.kinds))
    if len(filters) == 1:
        return filters[0]
    return all_of(*filters)


def build_poller(
    settings: TelepollSettings,
    *,
    on_error: Callable[[FetchError], None] | None = None,
) -> Poller:
    polling = settings.polling
    allowed = (
        list(polling.allowed_updates) if polling.allowed_updates is not None else None
    )
    poller: Poller = LongPoller(
        timeout_s=polling.timeout_s,
        allowed_updates=allowed,
        start_after=polling.start_after,
        retry=polling.retry.to_policy(),
        on_error=on_error,
    )
    # First listed layer sits closest to the network.
    for layer in settings.middleware:
        poller = middleware(
            poller,
            _layer_filter(layer),
            capacity=layer.capacity,
            join_timeout_s=layer.join_timeout_s,
        )
    return poller

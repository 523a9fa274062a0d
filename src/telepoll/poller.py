"""Pollers: producers of Telegram updates.

A poller is driven with a bot handle, the send side of a memory object
stream and a stop event, and keeps producing updates into the stream until
the event is set::

    send, receive = anyio.create_memory_object_stream(100)
    stop = anyio.Event()
    poller = middleware(LongPoller(timeout_s=30), chat_filter({123}))
    tg.start_soon(poller.poll, bot, send, stop)

Pollers compose by nesting: a :class:`MiddlewarePoller` runs the poller it
wraps in its own task and sieves what comes out of it.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import anyio
from anyio.abc import ObjectSendStream
from anyio.lowlevel import checkpoint

from .logging import get_logger, log_pipeline
from .telegram.api_models import Update
from .telegram.client import BotClient, FetchError, TelegramRetryAfter

logger = get_logger(__name__)

UpdateFilter = Callable[[Update], bool]


class PollingError(RuntimeError):
    """Raised when a poller gives up; never raised under the default policy."""


class Poller(Protocol):
    async def poll(
        self,
        bot: BotClient,
        dest: ObjectSendStream[Update],
        stop: anyio.Event,
    ) -> None:
        """Produce updates into ``dest`` until ``stop`` is set.

        Returns early only when the reader closed ``dest`` or the poller
        raises :class:`PollingError`. ``stop`` is only guaranteed to be
        noticed between fetches.
        """
        ...


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How a :class:`LongPoller` reacts to consecutive fetch failures.

    The default retries forever with no delay.
    """

    max_attempts: int | None = None
    initial_delay_s: float = 0.0
    max_delay_s: float = 30.0
    multiplier: float = 2.0
    respect_retry_after: bool = False

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts

    def delay_for(self, attempt: int, error: Exception) -> float:
        delay = 0.0
        if self.initial_delay_s > 0:
            delay = self.initial_delay_s * self.multiplier ** max(attempt - 1, 0)
            delay = min(delay, self.max_delay_s)
        if self.respect_retry_after and isinstance(error, TelegramRetryAfter):
            delay = max(delay, error.retry_after)
        return delay


class LongPoller:
    """Classic getUpdates long polling.

    ``latest_update_id`` is the id of the last update handed to the
    destination; each fetch asks for anything newer.
    """

    def __init__(
        self,
        *,
        timeout_s: int = 50,
        allowed_updates: list[str] | None = None,
        start_after: int = 0,
        retry: RetryPolicy | None = None,
        on_error: Callable[[FetchError], None] | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self.allowed_updates = allowed_updates
        self.retry = retry or RetryPolicy()
        self.on_error = on_error
        self.latest_update_id = start_after

    async def poll(
        self,
        bot: BotClient,
        dest: ObjectSendStream[Update],
        stop: anyio.Event,
    ) -> None:
        failures = 0
        while not stop.is_set():
            try:
                updates = await bot.get_updates(
                    offset=self.latest_update_id + 1,
                    timeout_s=self.timeout_s,
                    allowed_updates=self.allowed_updates,
                )
            except FetchError as exc:
                failures += 1
                await self._recover(exc, failures, stop)
                continue
            failures = 0
            if not updates:
                await checkpoint()
                continue
            try:
                await self._deliver(updates, dest)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                logger.debug(
                    "poller.destination_closed",
                    latest_update_id=self.latest_update_id,
                )
                return

    async def _deliver(
        self, updates: list[Update], dest: ObjectSendStream[Update]
    ) -> None:
        for update in updates:
            if update.update_id <= self.latest_update_id:
                log_pipeline(
                    logger,
                    "poller.update.stale",
                    update_id=update.update_id,
                    latest_update_id=self.latest_update_id,
                )
                continue
            # Advance first so a blocked send never leaves the cursor behind
            # an update that is already on its way out.
            self.latest_update_id = update.update_id
            log_pipeline(logger, "poller.update", update_id=update.update_id)
            await dest.send(update)

    async def _recover(self, exc: FetchError, attempt: int, stop: anyio.Event) -> None:
        logger.info(
            "poller.get_updates.failed",
            error=str(exc),
            error_type=exc.__class__.__name__,
            attempt=attempt,
            offset=self.latest_update_id + 1,
        )
        if self.on_error is not None:
            self.on_error(exc)
        if self.retry.exhausted(attempt):
            logger.error("poller.retries_exhausted", attempts=attempt)
            raise PollingError(
                f"getUpdates failed {attempt} times in a row"
            ) from exc
        delay = self.retry.delay_for(attempt, exc)
        if delay <= 0:
            await checkpoint()
            return
        with anyio.move_on_after(delay):
            await stop.wait()


@dataclass(slots=True)
class MiddlewarePoller:
    """Filters the updates of another poller.

    Only updates for which ``filter`` returns true are forwarded. The
    wrapped poller writes into a relay stream of ``capacity`` slots, so a
    slow filter can be given more room.

    When the outer stop is set the wrapped poller is told to stop and given
    ``join_timeout_s`` to unwind before it is cancelled. With the default
    of zero, ``poll`` returns right away even if a fetch is in flight.
    """

    poller: Poller
    filter: UpdateFilter
    capacity: int = 1
    join_timeout_s: float = 0.0

    def _check_chain(self) -> None:
        inner: Poller = self.poller
        while isinstance(inner, MiddlewarePoller):
            if inner is self:
                raise ValueError("middleware poller wraps itself")
            inner = inner.poller

    async def poll(
        self,
        bot: BotClient,
        dest: ObjectSendStream[Update],
        stop: anyio.Event,
    ) -> None:
        self._check_chain()
        relay_send, relay_recv = anyio.create_memory_object_stream(
            max(self.capacity, 1)
        )
        inner_stop = anyio.Event()
        inner_done = anyio.Event()
        failure: PollingError | None = None

        async with anyio.create_task_group() as tg:

            async def run_inner() -> None:
                nonlocal failure
                try:
                    await self.poller.poll(bot, relay_send, inner_stop)
                except PollingError as exc:
                    failure = exc
                finally:
                    relay_send.close()
                    inner_done.set()

            async def watch_stop() -> None:
                await stop.wait()
                inner_stop.set()
                with anyio.move_on_after(self.join_timeout_s):
                    await inner_done.wait()
                if not inner_done.is_set():
                    logger.debug(
                        "middleware.inner_cancelled",
                        join_timeout_s=self.join_timeout_s,
                    )
                tg.cancel_scope.cancel()

            tg.start_soon(run_inner)
            tg.start_soon(watch_stop)

            with relay_recv:
                async for update in relay_recv:
                    if stop.is_set():
                        break
                    if self.filter(update):
                        try:
                            await dest.send(update)
                        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                            logger.debug(
                                "middleware.destination_closed",
                                update_id=update.update_id,
                            )
                            tg.cancel_scope.cancel()
                            return
                    else:
                        log_pipeline(
                            logger, "middleware.dropped", update_id=update.update_id
                        )

            if failure is not None:
                tg.cancel_scope.cancel()

        if failure is not None:
            raise failure


def middleware(
    poller: Poller,
    filter: UpdateFilter,
    *,
    capacity: int = 1,
    join_timeout_s: float = 0.0,
) -> MiddlewarePoller:
    return MiddlewarePoller(
        poller=poller,
        filter=filter,
        capacity=capacity,
        join_timeout_s=join_timeout_s,
    )

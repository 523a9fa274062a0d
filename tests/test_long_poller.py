import anyio
import pytest

from telepoll.poller import LongPoller, PollingError, RetryPolicy
from telepoll.telegram.client import FetchError
from tests.telegram_fakes import FakeBot, make_update


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await anyio.sleep(0)


@pytest.mark.anyio
async def test_long_poller_delivers_in_order_and_advances_cursor() -> None:
    bot = FakeBot([[make_update(1), make_update(2)], [make_update(3)]])
    poller = LongPoller(timeout_s=5, allowed_updates=["message"])
    send, receive = anyio.create_memory_object_stream(10)
    stop = anyio.Event()

    with anyio.fail_after(2):
        async with anyio.create_task_group() as tg:
            tg.start_soon(poller.poll, bot, send, stop)
            received = [(await receive.receive()).update_id for _ in range(3)]
            await bot.idle.wait()
            tg.cancel_scope.cancel()

    assert received == [1, 2, 3]
    assert bot.offsets == [1, 3, 4]
    assert bot.timeouts == [5, 5, 5]
    assert bot.allowed[0] == ["message"]
    assert poller.latest_update_id == 3


@pytest.mark.anyio
async def test_long_poller_never_redelivers_old_ids() -> None:
    bot = FakeBot(
        [[make_update(5), make_update(3), make_update(5), make_update(7)]]
    )
    poller = LongPoller(start_after=4)
    send, receive = anyio.create_memory_object_stream(10)
    stop = anyio.Event()

    with anyio.fail_after(2):
        async with anyio.create_task_group() as tg:
            tg.start_soon(poller.poll, bot, send, stop)
            await bot.idle.wait()
            tg.cancel_scope.cancel()

    received = []
    while True:
        try:
            received.append(receive.receive_nowait().update_id)
        except anyio.WouldBlock:
            break
    assert received == [5, 7]
    assert bot.offsets == [5, 8]


@pytest.mark.anyio
async def test_long_poller_retries_fetch_errors_immediately() -> None:
    bot = FakeBot(
        [
            FetchError("getUpdates", "boom"),
            FetchError("getUpdates", "boom again"),
            [make_update(1)],
        ]
    )
    errors: list[FetchError] = []
    poller = LongPoller(on_error=errors.append)
    send, receive = anyio.create_memory_object_stream(10)
    stop = anyio.Event()

    with anyio.fail_after(2):
        async with anyio.create_task_group() as tg:
            tg.start_soon(poller.poll, bot, send, stop)
            update = await receive.receive()
            await bot.idle.wait()
            tg.cancel_scope.cancel()

    assert update.update_id == 1
    assert [str(e) for e in errors] == ["getUpdates: boom", "getUpdates: boom again"]
    assert bot.offsets == [1, 1, 1, 2]


@pytest.mark.anyio
async def test_long_poller_returns_without_fetching_when_already_stopped() -> None:
    bot = FakeBot([[make_update(1)]])
    send, receive = anyio.create_memory_object_stream(10)
    stop = anyio.Event()
    stop.set()

    with anyio.fail_after(1):
        await LongPoller().poll(bot, send, stop)

    assert bot.calls == 0
    with pytest.raises(anyio.WouldBlock):
        receive.receive_nowait()


class _StopDuringFetchBot(FakeBot):
    def __init__(self, stop: anyio.Event) -> None:
        super().__init__([[make_update(1), make_update(2)]])
        self._stop = stop

    async def get_updates(self, offset, timeout_s=50, allowed_updates=None):
        batch = await super().get_updates(offset, timeout_s, allowed_updates)
        self._stop.set()
        return batch


@pytest.mark.anyio
async def test_long_poller_finishes_fetched_batch_then_stops() -> None:
    stop = anyio.Event()
    bot = _StopDuringFetchBot(stop)
    send, receive = anyio.create_memory_object_stream(10)

    with anyio.fail_after(1):
        await LongPoller().poll(bot, send, stop)

    assert bot.calls == 1
    assert receive.receive_nowait().update_id == 1
    assert receive.receive_nowait().update_id == 2


@pytest.mark.anyio
async def test_long_poller_blocks_on_full_destination() -> None:
    bot = FakeBot([[make_update(1), make_update(2), make_update(3)]])
    poller = LongPoller()
    send, receive = anyio.create_memory_object_stream(1)
    stop = anyio.Event()

    with anyio.fail_after(2):
        async with anyio.create_task_group() as tg:
            tg.start_soon(poller.poll, bot, send, stop)
            await _settle()
            assert bot.calls == 1
            assert poller.latest_update_id == 2

            drained = [(await receive.receive()).update_id for _ in range(3)]
            await bot.idle.wait()
            tg.cancel_scope.cancel()

    assert drained == [1, 2, 3]
    assert bot.calls == 2


@pytest.mark.anyio
async def test_long_poller_returns_when_destination_closed() -> None:
    bot = FakeBot([[make_update(1)]])
    send, receive = anyio.create_memory_object_stream(1)
    receive.close()

    with anyio.fail_after(1):
        await LongPoller().poll(bot, send, anyio.Event())

    assert bot.calls == 1


@pytest.mark.anyio
async def test_long_poller_gives_up_after_max_attempts() -> None:
    bot = FakeBot(
        [FetchError("getUpdates", "down"), FetchError("getUpdates", "still down")]
    )
    poller = LongPoller(retry=RetryPolicy(max_attempts=2))
    send, _ = anyio.create_memory_object_stream(1)

    with anyio.fail_after(1):
        with pytest.raises(PollingError) as excinfo:
            await poller.poll(bot, send, anyio.Event())

    assert bot.calls == 2
    assert isinstance(excinfo.value.__cause__, FetchError)


@pytest.mark.anyio
async def test_long_poller_backoff_is_cut_short_by_stop() -> None:
    bot = FakeBot([FetchError("getUpdates", "down")])
    failed = anyio.Event()
    poller = LongPoller(
        retry=RetryPolicy(initial_delay_s=60), on_error=lambda _: failed.set()
    )
    send, _ = anyio.create_memory_object_stream(1)
    stop = anyio.Event()

    with anyio.fail_after(2):
        async with anyio.create_task_group() as tg:
            tg.start_soon(poller.poll, bot, send, stop)
            await failed.wait()
            stop.set()

    assert bot.calls == 1

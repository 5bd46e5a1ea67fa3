import anyio
import pytest

from sse_pulse.ticker import Tick, Ticker, validate_interval

INTERVAL = 0.05


@pytest.mark.anyio
async def test_no_tick_at_start_then_one_per_interval():
    ticks = []

    async def on_tick(tick: Tick):
        ticks.append((tick.sequence, anyio.current_time()))

    async with anyio.create_task_group() as tg:
        ticker = Ticker(tg)
        start = anyio.current_time()
        subscription = ticker.subscribe(INTERVAL, on_tick)
        await anyio.sleep(INTERVAL / 2)
        assert ticks == []
        await anyio.sleep(INTERVAL * 4)
        subscription.cancel()

    assert len(ticks) >= 3
    assert ticks[0][1] - start >= INTERVAL * 0.9
    assert [sequence for sequence, _ in ticks] == list(range(len(ticks)))
    assert ticker.active_subscriptions == 0


@pytest.mark.anyio
async def test_cancel_stops_ticks():
    ticks = []

    async def on_tick(tick: Tick):
        ticks.append(tick.sequence)

    async with anyio.create_task_group() as tg:
        ticker = Ticker(tg)
        subscription = ticker.subscribe(INTERVAL, on_tick)
        assert ticker.active_subscriptions == 1
        await anyio.sleep(INTERVAL * 2.5)
        subscription.cancel()
        subscription.cancel()  # idempotent
        seen = len(ticks)
        await anyio.sleep(INTERVAL * 3)

    assert len(ticks) == seen
    assert subscription.cancelled
    assert not subscription.active
    assert ticker.active_subscriptions == 0


@pytest.mark.anyio
async def test_cancel_from_inside_callback():
    ticks = []

    async def on_tick(tick: Tick):
        ticks.append(tick.sequence)
        if tick.sequence == 1:
            subscription.cancel()

    async with anyio.create_task_group() as tg:
        subscription = Ticker(tg).subscribe(INTERVAL, on_tick)

    assert ticks == [0, 1]


@pytest.mark.anyio
async def test_slow_subscriber_ticks_are_coalesced():
    ticks = []

    async def on_tick(tick: Tick):
        ticks.append(tick.sequence)
        if tick.sequence == 0:
            # overrun two and a half intervals
            await anyio.sleep(INTERVAL * 2.5)
        if len(ticks) == 3:
            subscription.cancel()

    async with anyio.create_task_group() as tg:
        subscription = Ticker(tg).subscribe(INTERVAL, on_tick)

    assert ticks[0] == 0
    assert ticks[1] >= 2
    assert ticks == sorted(set(ticks))


@pytest.mark.anyio
async def test_callback_error_is_handed_to_on_error():
    errors = []

    async def on_tick(tick: Tick):
        raise RuntimeError("boom")

    async with anyio.create_task_group() as tg:
        ticker = Ticker(tg)
        subscription = ticker.subscribe(INTERVAL, on_tick, errors.append)

    assert len(errors) == 1
    assert isinstance(errors[0], RuntimeError)
    assert not subscription.active
    assert ticker.active_subscriptions == 0


@pytest.mark.anyio
async def test_many_subscriptions_share_the_loop():
    counts = {}

    def make_callback(key):
        async def on_tick(tick: Tick):
            counts[key] = tick.sequence + 1

        return on_tick

    async with anyio.create_task_group() as tg:
        ticker = Ticker(tg)
        for key in range(50):
            ticker.subscribe(INTERVAL, make_callback(key))
        assert ticker.active_subscriptions == 50
        await anyio.sleep(INTERVAL * 2.5)
        ticker.cancel_all()

    assert len(counts) == 50
    assert ticker.active_subscriptions == 0


@pytest.mark.parametrize("value", [0, -1, float("inf"), float("nan")])
def test_validate_interval_rejects_values(value):
    with pytest.raises(ValueError):
        validate_interval(value)


@pytest.mark.parametrize("value", ["3", None, True])
def test_validate_interval_rejects_types(value):
    with pytest.raises(TypeError):
        validate_interval(value)

import asyncio
import os
import signal

import pytest

from kiter.shutdown import ShutdownCoordinator, Stopped, race_stop, sleep_or_stop


@pytest.mark.asyncio
async def test_request_stop_is_idempotent():
    coordinator = ShutdownCoordinator()
    assert not coordinator.stopping
    coordinator.request_stop("SIGINT")
    coordinator.request_stop("SIGTERM")
    assert coordinator.stopping
    assert coordinator.stop_reason == "SIGINT"


@pytest.mark.asyncio
async def test_interrupt_signal_sets_stop_event():
    coordinator = ShutdownCoordinator()
    coordinator.install()
    coordinator.install()
    try:
        os.kill(os.getpid(), signal.SIGINT)
        await asyncio.wait_for(coordinator.stop_event.wait(), timeout=1.0)
        os.kill(os.getpid(), signal.SIGINT)
        await asyncio.sleep(0.01)
    finally:
        coordinator.uninstall()
    assert coordinator.stop_reason == "SIGINT"


@pytest.mark.asyncio
async def test_sleep_or_stop_times_out():
    stop_event = asyncio.Event()
    assert await sleep_or_stop(0.01, stop_event) is False


@pytest.mark.asyncio
async def test_sleep_or_stop_wakes_on_stop():
    stop_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.02, stop_event.set)
    loop = asyncio.get_running_loop()
    started = loop.time()
    assert await sleep_or_stop(5.0, stop_event) is True
    assert loop.time() - started < 1.0


@pytest.mark.asyncio
async def test_race_stop_returns_result():
    async def work():
        return 42

    assert await race_stop(work(), asyncio.Event()) == 42


@pytest.mark.asyncio
async def test_race_stop_raises_when_stopped():
    stop_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.02, stop_event.set)
    with pytest.raises(Stopped):
        await race_stop(asyncio.sleep(5.0), stop_event)


@pytest.mark.asyncio
async def test_race_stop_propagates_errors():
    async def work():
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await race_stop(work(), asyncio.Event())

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any, Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Stopped(Exception):
    """Raised by the wait helpers when the stop signal wins the race."""


class ShutdownCoordinator:
    def __init__(self) -> None:
        self.stop_event = asyncio.Event()
        self.stop_reason: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[signal.Signals] = []
        self._fallback: dict[signal.Signals, Any] = {}

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def request_stop(self, reason: str) -> None:
        if self.stop_event.is_set():
            return
        self.stop_reason = reason
        self.stop_event.set()
        logger.info("stop requested: reason=%s", reason)

    def install(self) -> None:
        if self._loop is not None:
            return
        loop = asyncio.get_running_loop()
        self._loop = loop

        def _request_stop(sig: signal.Signals) -> None:
            if self.stop_event.is_set():
                return
            loop.call_soon_threadsafe(self.request_stop, sig.name)

        for sig in STOP_SIGNALS:
            try:
                loop.add_signal_handler(sig, _request_stop, sig)
                self._installed.append(sig)
            except (NotImplementedError, RuntimeError):
                try:
                    previous = signal.signal(sig, lambda *_args, _sig=sig: _request_stop(_sig))
                except (ValueError, AttributeError):
                    continue
                self._fallback[sig] = previous

    def uninstall(self) -> None:
        loop = self._loop
        if loop is None:
            return
        for sig in self._installed:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(sig)
        for sig, previous in self._fallback.items():
            with contextlib.suppress(ValueError, TypeError):
                signal.signal(sig, previous)
        self._installed.clear()
        self._fallback.clear()
        self._loop = None


async def race_stop(awaitable: Awaitable[T], stop_event: asyncio.Event) -> T:
    if stop_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise Stopped()
    work = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        stopper.cancel()
        raise
    if work.done():
        stopper.cancel()
        return work.result()
    # The in-flight call is abandoned; a worker thread finishes on its own.
    work.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await work
    raise Stopped()


async def sleep_or_stop(seconds: float, stop_event: asyncio.Event) -> bool:
    if stop_event.is_set():
        return True
    if seconds <= 0:
        await asyncio.sleep(0)
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True

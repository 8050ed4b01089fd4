"""Async runtime for strategy engines.

- PeriodicTicker fires an engine tick on a fixed interval
- EngineRunner starts engines, reports status, and stops them on signal
"""
import asyncio
import signal
from typing import Awaitable, Callable, List, Optional, Set

from .logging_setup import logger


class PeriodicTicker:
    """Fire ``callback`` every ``interval_seconds`` without awaiting it.

    A slow tick never delays the schedule; overlapping fires are left to the
    callback's own re-entrancy guard.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.callback = callback
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            task = asyncio.ensure_future(self.callback())
            self._inflight.add(task)
            task.add_done_callback(self._on_done)
            await asyncio.sleep(self.interval)

    def _on_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Periodic tick raised")

    async def stop(self) -> None:
        """Stop firing and wait for ticks already in flight."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


class EngineRunner:
    """Run engines until stopped.

    Engines must provide ``start()`` and an awaitable ``stop()``. When a
    ``status`` callback is given it is called every ``status_interval``
    seconds with the list of engines.
    """

    def __init__(
        self,
        engines: List,
        status: Optional[Callable[[List], None]] = None,
        status_interval: float = 5.0,
    ):
        self.engines = engines
        self.status = status
        self.status_interval = status_interval
        self._stop_event = asyncio.Event()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                logger.warning(f"Signal handler not installed | signal={sig.name}")

    async def start(self) -> None:
        for engine in self.engines:
            engine.start()
        logger.info(f"Engines started | count={len(self.engines)}")
        try:
            while not self._stop_event.is_set():
                if self.status is not None:
                    try:
                        self.status(self.engines)
                    except Exception:
                        logger.exception("Status callback failed")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.status_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            for engine in self.engines:
                await engine.stop()
            logger.info("Engines stopped")

    async def stop(self) -> None:
        """Signal the runner to stop."""
        self._stop_event.set()

"""Realtime WebSocket client using aiohttp for Aster futures streams.

Connects to a combined-stream URL, forwards decoded JSON messages to an
async callback and reconnects with jittered backoff until stopped.
"""
from typing import Awaitable, Callable, List, Optional
import asyncio
import json
import random

import aiohttp
from aiohttp import ClientSession, ClientWebSocketResponse, WSMsgType

from .logging_setup import logger

DEFAULT_WS_URL = "wss://fstream.asterdex.com"


def combined_stream_url(ws_url: str, streams: List[str]) -> str:
    """URL of a combined stream, e.g. ``/stream?streams=btcusdt@ticker/<listenKey>``."""
    return f"{ws_url.rstrip('/')}/stream?streams={'/'.join(streams)}"


class RealTimeWebSocketClient:
    def __init__(self, ws_url: str = DEFAULT_WS_URL, *, max_backoff_seconds: float = 30.0):
        self.ws_url = ws_url
        self.max_backoff_seconds = max_backoff_seconds
        self._session: Optional[ClientSession] = None
        self._ws: Optional[ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 30.0) -> float:
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    async def _read(self, on_message: Callable[[dict], Awaitable[None]]) -> None:
        assert self._ws is not None
        async for msg in self._ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    logger.warning(f"Dropping non-JSON message | url={self.ws_url}")
                    continue
                # Combined streams wrap the payload as {"stream": ..., "data": ...}
                if isinstance(data, dict) and "data" in data and "stream" in data:
                    data = data["data"]
                try:
                    await on_message(data)
                except Exception:
                    logger.exception("WebSocket message handler failed")
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR):
                break

    async def _run_loop(self, streams: List[str], on_message: Callable[[dict], Awaitable[None]]) -> None:
        url = combined_stream_url(self.ws_url, streams)
        attempt = 0
        self._session = ClientSession()
        try:
            while self._running:
                try:
                    self._ws = await self._session.ws_connect(url, heartbeat=30)
                    logger.info(f"WebSocket connected | streams={len(streams)}")
                    attempt = 0
                    await self._read(on_message)
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logger.warning(f"WebSocket error | error={e}")
                finally:
                    if self._ws is not None:
                        await self._ws.close()
                        self._ws = None
                if not self._running:
                    break
                delay = self._jittered_backoff(attempt, max_backoff=self.max_backoff_seconds)
                attempt += 1
                logger.info(f"WebSocket reconnecting | delay={delay:.1f}s attempt={attempt}")
                await asyncio.sleep(delay)
        finally:
            await self._session.close()
            self._session = None

    async def start(self, streams: List[str], on_message: Callable[[dict], Awaitable[None]]) -> None:
        """Start the message loop in a background task and return immediately."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run_loop(streams, on_message))

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

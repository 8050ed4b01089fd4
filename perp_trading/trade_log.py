"""Bounded in-memory trade event log, mirrored to loguru."""
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List

from .logging_setup import logger

_LEVELS = {"error": "ERROR", "warn": "WARNING"}


@dataclass(frozen=True)
class TradeLogEntry:
    time: float
    type: str
    detail: str


class TradeLog:
    """Append-only event ring; the oldest entry is evicted at capacity.

    Categories used by the engines: ``open``, ``close``, ``stop``, ``order``,
    ``info``, ``warn`` and ``error``.
    """

    def __init__(self, max_entries: int = 200, clock: Callable[[], float] = time.time, name: str = "engine"):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._entries: Deque[TradeLogEntry] = deque(maxlen=max_entries)
        self._clock = clock
        self.name = name

    def push(self, type: str, detail: str) -> None:
        self._entries.append(TradeLogEntry(time=self._clock(), type=type, detail=detail))
        logger.bind(engine=self.name, category=type).log(_LEVELS.get(type, "INFO"), detail)

    def all(self) -> List[TradeLogEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

"""Interrupt signals and the priority queue the orchestrator polls."""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class SignalSource(str, Enum):
    """Where an interrupt came from. Declaration order is priority order."""

    BREAKING_NEWS = "breaking_news"
    LISTENER_INPUT = "listener_input"
    TREND_INJECTION = "trend_injection"
    PEER_AD_LIB = "peer_ad_lib"

    @property
    def priority(self) -> int:
        """Lower number wins."""
        return _PRIORITY[self]

    @classmethod
    def parse(cls, name: str) -> SignalSource:
        """Map a producer category string ("breaking", "listener", ...) to a source."""
        key = name.strip().lower().replace("-", "_")
        if key in _ALIASES:
            return _ALIASES[key]
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown signal source: {name}") from None


_PRIORITY = {source: rank for rank, source in enumerate(SignalSource)}

_ALIASES = {
    "breaking": SignalSource.BREAKING_NEWS,
    "listener": SignalSource.LISTENER_INPUT,
    "comment": SignalSource.LISTENER_INPUT,
    "caller": SignalSource.LISTENER_INPUT,
    "trend": SignalSource.TREND_INJECTION,
    "adlib": SignalSource.PEER_AD_LIB,
    "ad_lib": SignalSource.PEER_AD_LIB,
}


@dataclass(frozen=True)
class InterruptSignal:
    """An event that preempts the current speaker."""

    source: SignalSource
    payload: str
    origin: str | None = None
    created_at: float = field(default_factory=time.monotonic)

    @property
    def priority(self) -> int:
        return self.source.priority


class InterruptQueue:
    """Pending signals, highest priority first, FIFO within one priority."""

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, InterruptSignal]] = []
        self._seq = itertools.count()

    def put(self, signal: InterruptSignal) -> None:
        heapq.heappush(self._heap, (signal.priority, next(self._seq), signal))
        logger.info("Queued %s signal: %.80s", signal.source.value, signal.payload)

    def submit(self, source: SignalSource, payload: str, origin: str | None = None) -> InterruptSignal:
        signal = InterruptSignal(source=source, payload=payload, origin=origin)
        self.put(signal)
        return signal

    def peek(self) -> InterruptSignal | None:
        return self._heap[0][2] if self._heap else None

    def pop(self) -> InterruptSignal | None:
        if not self._heap:
            return None
        return heapq.heappop(self._heap)[2]

    @property
    def pending(self) -> bool:
        return bool(self._heap)

    def outranks(self, priority: int) -> bool:
        """True if a queued signal has strictly higher priority than ``priority``."""
        return bool(self._heap) and self._heap[0][0] < priority

    def clear(self) -> None:
        self._heap.clear()

    def __len__(self) -> int:
        return len(self._heap)

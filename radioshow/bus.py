"""Audio fan-out: one write reaches every registered sink."""

from __future__ import annotations

import logging
import weakref
from typing import Protocol, runtime_checkable

from .errors import SinkWriteFailure

logger = logging.getLogger(__name__)


@runtime_checkable
class AudioSink(Protocol):
    """Anything that can take PCM16 mono 24 kHz frames.

    ``write`` must not block; sinks queue internally if they need to.
    Sinks may also define ``clear()`` to drop audio not yet played.
    """

    name: str

    def write(self, frame: bytes) -> None:
        """Accept one frame of audio."""
        ...


class AudioBus:
    """Registry of sinks. Holds weak references; it never owns a sink."""

    def __init__(self) -> None:
        self._sinks: weakref.WeakSet[AudioSink] = weakref.WeakSet()

    def register(self, sink: AudioSink) -> None:
        if sink in self._sinks:
            return
        self._sinks.add(sink)
        logger.info("Audio output registered: %s", sink.name)

    def deregister(self, sink: AudioSink) -> None:
        if sink not in self._sinks:
            return
        self._sinks.discard(sink)
        logger.info("Audio output removed: %s", sink.name)

    @property
    def sinks(self) -> list[AudioSink]:
        return list(self._sinks)

    def __len__(self) -> int:
        return len(self._sinks)

    def write(self, frame: bytes, *, exclude: AudioSink | None = None) -> int:
        """Deliver ``frame`` to every sink; return how many accepted it."""
        delivered = 0
        for sink in list(self._sinks):
            if sink is exclude:
                continue
            try:
                sink.write(frame)
            except SinkWriteFailure as exc:
                logger.warning("Sink %s rejected frame: %s", sink.name, exc)
            except Exception:
                logger.exception("Sink %s failed", getattr(sink, "name", sink))
            else:
                delivered += 1
        return delivered

    def clear(self) -> None:
        """Drop pending audio on sinks that support it."""
        for sink in list(self._sinks):
            clear = getattr(sink, "clear", None)
            if clear is None:
                continue
            try:
                clear()
            except Exception:
                logger.exception("Sink %s failed to clear", getattr(sink, "name", sink))

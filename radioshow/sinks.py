"""Queued sinks with keep-alive pacing, and sinks backed by an external process."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shlex
from collections.abc import Sequence

from .audio import SAMPLE_RATE, duration_ms, silence
from .errors import SinkWriteFailure

logger = logging.getLogger(__name__)


class StreamSink:
    """Base for sinks that forward frames from a writer task.

    ``write`` only enqueues, so a slow destination never blocks the bus. The
    writer tracks when the audio it has forwarded will have finished playing
    (from sample counts) and, once nothing real is pending, keeps the
    destination fed with ``keepalive_ms`` of silence at a time.
    """

    def __init__(
        self,
        name: str,
        *,
        sample_rate: int = SAMPLE_RATE,
        keepalive_ms: float = 100.0,
        max_backlog: int = 512,
    ) -> None:
        self.name = name
        self.sample_rate = sample_rate
        self._keepalive_frame = silence(keepalive_ms, sample_rate) if keepalive_ms > 0 else b""
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=max_backlog)
        self._task: asyncio.Task | None = None
        self._deadline = 0.0
        self._pending_clear = False
        self._cleared = asyncio.Event()
        self.closed = False
        self.frames_sent = 0
        self.keepalives_sent = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def write(self, frame: bytes) -> None:
        if self.closed:
            raise SinkWriteFailure(f"{self.name} is closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            raise SinkWriteFailure(f"{self.name} backlog is full") from None

    def clear(self) -> None:
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            dropped += 1
        self._pending_clear = True
        self._cleared.set()
        if dropped:
            logger.debug("%s dropped %d pending frames", self.name, dropped)

    async def start(self) -> None:
        if self.running:
            return
        self.closed = False
        self._task = asyncio.create_task(self._run(), name=f"sink:{self.name}")

    async def stop(self) -> None:
        self.closed = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _send(self, frame: bytes) -> None:
        """Forward one frame to the destination."""
        raise NotImplementedError

    async def _flush(self) -> None:
        """Tell the destination to drop audio it has buffered."""

    async def _next_frame(self, loop: asyncio.AbstractEventLoop) -> bytes | None:
        """Wait for a queued frame until the play-out deadline or a ``clear()``.

        None means nothing real arrived in time.
        """
        timeout: float | None = None
        if self._keepalive_frame:
            timeout = self._deadline - loop.time()
            if timeout <= 0:
                try:
                    return self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    return None
        getter = asyncio.ensure_future(self._queue.get())
        waker = asyncio.ensure_future(self._cleared.wait())
        try:
            await asyncio.wait({getter, waker}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waker.cancel()
            if not getter.done():
                getter.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        return None

    async def _apply_clear(self, loop: asyncio.AbstractEventLoop) -> None:
        if not self._pending_clear:
            return
        self._pending_clear = False
        self._cleared.clear()
        self._deadline = loop.time()
        await self._flush()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        self._deadline = loop.time()
        while True:
            await self._apply_clear(loop)
            frame = await self._next_frame(loop)
            # Audio written after a clear must reach the destination after its flush.
            if self._pending_clear:
                await self._apply_clear(loop)
                if frame is None or self._pending_clear:
                    continue
            if frame is None:
                frame = self._keepalive_frame
                self.keepalives_sent += 1
            else:
                self.frames_sent += 1

            try:
                await self._send(frame)
            except SinkWriteFailure as exc:
                logger.warning("%s dropped a frame: %s", self.name, exc)
                continue
            except Exception:
                logger.exception("%s writer stopped", self.name)
                self.closed = True
                return
            self._deadline = max(self._deadline, loop.time()) + duration_ms(frame, self.sample_rate) / 1000.0


class ProcessSink(StreamSink):
    """Feeds raw PCM16 mono audio to an external process on stdin.

    Used for the streaming encoder and the local preview player; the process
    itself is opaque, we only start it, write to it and stop it.
    """

    def __init__(self, name: str, command: str | Sequence[str], **kwargs) -> None:
        super().__init__(name, **kwargs)
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        self._process: asyncio.subprocess.Process | None = None

    async def start(self) -> None:
        if self._process is None:
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            logger.info("%s started (pid=%s): %s", self.name, self._process.pid, self.argv[0])
        await super().start()

    async def _send(self, frame: bytes) -> None:
        stdin = self._process.stdin if self._process else None
        if stdin is None or stdin.is_closing():
            raise SinkWriteFailure(f"{self.name} stdin is closed")
        stdin.write(frame)
        await stdin.drain()

    async def stop(self, timeout: float = 5.0) -> None:
        await super().stop()
        process, self._process = self._process, None
        if process is None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("%s did not exit, killing it", self.name)
            process.kill()
            await process.wait()
        logger.info("%s stopped (code=%s)", self.name, process.returncode)

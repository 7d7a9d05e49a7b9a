import asyncio
import sys

import pytest

from radioshow.errors import SinkWriteFailure
from radioshow.sinks import ProcessSink, StreamSink


class MemorySink(StreamSink):
    def __init__(self, **kwargs):
        super().__init__("memory", **kwargs)
        self.sent = []
        self.events = []
        self.flushes = 0

    async def _send(self, frame):
        self.sent.append(frame)
        self.events.append(("media", frame))

    async def _flush(self):
        self.flushes += 1
        self.events.append(("clear",))


@pytest.mark.asyncio
async def test_idle_sink_is_kept_alive_with_silence():
    sink = MemorySink(keepalive_ms=20)
    await sink.start()
    await asyncio.sleep(0.12)
    await sink.stop()

    assert sink.keepalives_sent >= 3
    assert sink.frames_sent == 0
    assert all(frame == bytes(960) for frame in sink.sent)


@pytest.mark.asyncio
async def test_real_audio_goes_out_in_order_before_keepalive():
    sink = MemorySink(keepalive_ms=20)
    await sink.start()
    sink.write(b"\x01\x00" * 240)
    sink.write(b"\x02\x00" * 240)
    await asyncio.sleep(0.05)
    await sink.stop()

    real = [f for f in sink.sent if f != bytes(960)]
    assert real == [b"\x01\x00" * 240, b"\x02\x00" * 240]
    assert sink.frames_sent == 2


@pytest.mark.asyncio
async def test_no_keepalive_while_audio_is_still_playing():
    sink = MemorySink(keepalive_ms=20)
    await sink.start()
    sink.write(b"\x01\x00" * 4800)  # 200 ms
    await asyncio.sleep(0.1)
    assert sink.keepalives_sent == 0
    await sink.stop()


@pytest.mark.asyncio
async def test_clear_drops_backlog_and_flushes_destination():
    sink = MemorySink(keepalive_ms=20)
    sink.write(b"\x01\x00")
    sink.write(b"\x02\x00")
    sink.clear()
    await sink.start()
    await asyncio.sleep(0.03)
    await sink.stop()

    assert sink.flushes == 1
    assert sink.frames_sent == 0


@pytest.mark.asyncio
async def test_clear_during_playout_flushes_before_next_audio():
    sink = MemorySink(keepalive_ms=20)
    await sink.start()
    sink.write(b"\x01\x00" * 24000)  # 1 s, so the writer waits on a far deadline
    await asyncio.sleep(0.02)
    sink.clear()
    await asyncio.sleep(0.1)
    reply = b"\x02\x00" * 240
    sink.write(reply)
    await asyncio.sleep(0.05)
    await sink.stop()

    flushed_at = sink.events.index(("clear",))
    assert ("media", reply) in sink.events
    assert flushed_at < sink.events.index(("media", reply))


@pytest.mark.asyncio
async def test_clear_wakes_an_idle_writer():
    sink = MemorySink(keepalive_ms=0)
    await sink.start()
    await asyncio.sleep(0.01)
    sink.clear()
    await asyncio.sleep(0.01)
    assert sink.flushes == 1
    sink.write(b"\x03\x00")
    await asyncio.sleep(0.01)
    await sink.stop()
    assert sink.events == [("clear",), ("media", b"\x03\x00")]


def test_full_backlog_rejects_writes():
    sink = MemorySink(max_backlog=1)
    sink.write(b"\x00\x00")
    with pytest.raises(SinkWriteFailure):
        sink.write(b"\x00\x00")


@pytest.mark.asyncio
async def test_closed_sink_rejects_writes():
    sink = MemorySink()
    await sink.start()
    await sink.stop()
    with pytest.raises(SinkWriteFailure):
        sink.write(b"\x00\x00")


@pytest.mark.asyncio
async def test_process_sink_feeds_stdin():
    sink = ProcessSink("cat", [sys.executable, "-c", "import sys; sys.stdin.buffer.read()"], keepalive_ms=0)
    await sink.start()
    assert sink.running
    sink.write(b"\x00\x01" * 100)
    await asyncio.sleep(0.05)
    await sink.stop()
    assert sink.frames_sent == 1
    assert not sink.running
